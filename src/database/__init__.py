"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    create_tables,
    get_db,
    get_engine,
    get_session_factory,
)
from .models import Base, DimCustomer, DimMonth, FactBilling

__all__ = [
    "init_database",
    "close_database",
    "create_tables",
    "get_db",
    "get_engine",
    "get_session_factory",
    "Base",
    "DimCustomer",
    "DimMonth",
    "FactBilling",
]
