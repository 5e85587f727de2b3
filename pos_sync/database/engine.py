from sqlmodel import create_engine, SQLModel
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from typing import Optional

from pos_sync.core.config import settings


def create_local_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create the engine backing the device-local store.

    SQLite connections are shared with worker threads, so same-thread checks
    are disabled. In-memory databases use a single static connection or every
    new connection would see an empty database.
    """
    url = database_url or settings.LOCAL_DATABASE_URL
    kwargs = {"echo": settings.DATABASE_ECHO if echo is None else echo}

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    return create_engine(url, **kwargs)


def create_db_and_tables(engine: Engine):
    # Registers the local store tables on SQLModel.metadata
    from pos_sync.models import local_store  # noqa: F401

    SQLModel.metadata.create_all(engine)
