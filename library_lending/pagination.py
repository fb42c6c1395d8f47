import math
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from library_lending.config import settings


def normalize_page(page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """Clamp page/limit to sane values: page >= 1, 1 <= limit <= max_page_size."""
    page = max(page or 1, 1)
    limit = limit or settings.default_page_size
    limit = min(max(limit, 1), settings.max_page_size)
    return page, limit


def offset_for(page: int, limit: int) -> int:
    return (page - 1) * limit


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size > 0 else 1

    def to_dict(self, serialize: Callable[[Any], Any]) -> dict:
        return {
            "success": True,
            "count": len(self.items),
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "data": [serialize(item) for item in self.items],
        }
