"""
Actual database business logic.
"""

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


def create_engine_from_url(url: str) -> Engine:
    """
    Create an engine and the tables it needs. SQLite connections are shared
    between the fetch worker threads, so the same-thread check is disabled
    and in-memory databases are pinned to a single connection.
    """
    kwargs = {}

    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)
    create_database_and_tables(engine)

    return engine


def create_database_and_tables(engine: Engine):
    # Registers the table models on the metadata.
    import fieldsurvey.orm  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine):
    return Session(engine)
