"""Library Lending - Core Application Package

This package contains the core application modules including:
- REST API endpoints (api.py)
- GraphQL endpoint (graphql_api.py)
- Lending core: borrow/return transactions (library.py)
- Catalog store and borrowing ledger (catalog.py, ledger.py)
- Access policy (auth.py)
- CLI interface (cli.py)
- Data models (book.py, borrowing.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
