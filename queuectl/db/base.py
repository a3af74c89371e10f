import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DEFAULT_DATABASE_URL = "sqlite:///" + os.path.join(os.getcwd(), "queue.db")

Base = declarative_base()


def make_engine(url: str = DEFAULT_DATABASE_URL, echo: bool = False):
    """Build an engine; SQLite gets thread checks off and a busy timeout."""
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # one shared connection, otherwise every session sees an empty db.
            # Sessions on other threads share its transaction, so such an
            # engine can back at most one worker thread.
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    # models must be imported so their tables are registered on Base
    from queuectl.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
