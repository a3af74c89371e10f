from .base import Base, DEFAULT_DATABASE_URL, init_db, make_engine, make_session_factory

__all__ = ["Base", "DEFAULT_DATABASE_URL", "init_db", "make_engine", "make_session_factory"]
