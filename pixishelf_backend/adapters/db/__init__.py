"""Database adapters."""
from .schema import init_schema, migrate_schema
from .sqlite import Sqlite

__all__ = ["Sqlite", "init_schema", "migrate_schema"]
