"""
Database Package Initialization.

Async engine, session factory and transaction scope for the
trading engine ledger.
"""

from .engine import (
    Database,
    DatabasePersistenceError,
    DatabaseConnectionError,
    get_database_url,
)

__all__ = [
    "Database",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "get_database_url",
]
