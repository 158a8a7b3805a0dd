"""
Database package for the store.

Exports engine construction, models, and table creation.
"""
from .init_db import initialize_database, create_engine, create_session_factory
from .models import (
    Base,
    UserModel,
    ProductModel,
    TransactionModel,
    GrantModel,
    AuditLogModel,
    utcnow,
)

__all__ = [
    "initialize_database",
    "create_engine",
    "create_session_factory",
    "Base",
    "UserModel",
    "ProductModel",
    "TransactionModel",
    "GrantModel",
    "AuditLogModel",
    "utcnow",
]
