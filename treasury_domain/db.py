import os
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

DATABASE_URL = os.getenv("TREASURY_DB_URL", "sqlite:///./.data/treasury.db")


def make_engine(url: str = DATABASE_URL) -> Engine:
    # Engine options: sqlite needs check_same_thread, Postgres can use pool_pre_ping
    engine_kwargs = {"echo": False, "pool_pre_ping": True}
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        engine_kwargs.pop("pool_pre_ping", None)
        if url.startswith("sqlite:///./"):
            os.makedirs(os.path.dirname(url[len("sqlite:///"):]) or ".", exist_ok=True)
    return create_engine(url, connect_args=connect_args, **engine_kwargs)


engine = make_engine()


def init_db(bind: Engine | None = None) -> None:
    # import models so every table is registered on the metadata
    from common import audit  # noqa: F401
    from treasury_domain import inventory_models, order_models, settings_models  # noqa: F401
    from treasury_orchestrator import audit_exporter  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


SessionFactory = Callable[[], Session]


def session_factory() -> Session:
    return Session(engine)


# FastAPI dependency: ensures the session is closed after each request
def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def get_session_factory() -> SessionFactory:
    return session_factory


@contextmanager
def transaction(factory: SessionFactory) -> Iterator[Session]:
    """Open a session, commit on success and roll back on any error."""
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
