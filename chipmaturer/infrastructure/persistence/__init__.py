from .database import Database, init_database, DATABASE_FILE

__all__ = ["Database", "init_database", "DATABASE_FILE"]
