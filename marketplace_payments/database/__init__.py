"""Database package for marketplace payments."""
from .connection import close_db, create_session_factory, get_engine, get_session_factory, init_db
from .models import (
    Base,
    BlockedIP,
    Currency,
    Payment,
    PaymentLog,
    PaymentProvider,
    PaymentStatus,
    Property,
    SecurityLog,
    User,
)

__all__ = [
    "Base",
    "BlockedIP",
    "Currency",
    "Payment",
    "PaymentLog",
    "PaymentProvider",
    "PaymentStatus",
    "Property",
    "SecurityLog",
    "User",
    "close_db",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "init_db",
]
