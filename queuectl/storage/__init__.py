from queuectl.errors import ConfigurationError
from .base import QueueStorage
from .memory import InMemoryQueueStorage
from .sql import SQLAlchemyQueueStorage

__all__ = ["QueueStorage", "InMemoryQueueStorage", "SQLAlchemyQueueStorage", "create_storage"]


def create_storage(settings, clock=None, engine=None) -> QueueStorage:
    """Build the backend named by ``settings.storage_type``."""
    if settings.storage_type == "database":
        return SQLAlchemyQueueStorage(engine=engine, url=settings.database_url, clock=clock)
    if settings.storage_type == "memory":
        return InMemoryQueueStorage(clock=clock)
    raise ConfigurationError(f"Unsupported storage type: {settings.storage_type}")
