"""Database bootstrap helpers shared by all components."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from errandpay.common.config import settings


def make_session_factory(dsn: str, **engine_kwargs) -> sessionmaker:
    """Build an engine + session factory pair for one DSN."""

    engine = create_engine(dsn, pool_pre_ping=True, **engine_kwargs)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


# Built lazily so importing models never opens a connection pool.
_session_factory: sessionmaker | None = None


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory for `settings.postgres_dsn`."""

    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(settings.postgres_dsn)
    return _session_factory


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
