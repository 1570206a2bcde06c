from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Generator, Iterable

from sqlalchemy import create_engine, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from orderflow.core.config import Settings, get_settings
from orderflow.persistence.models import Base

SessionFactory = Callable[[], Session]


def create_engine_from_url(url: str, settings: Settings | None = None):
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {
            "timeout": settings.db_connect_timeout_seconds,
            "check_same_thread": False,
        }
    else:
        kwargs["pool_timeout"] = settings.db_pool_timeout_seconds
        if url.startswith("postgresql"):
            kwargs["connect_args"] = {
                "connect_timeout": settings.db_connect_timeout_seconds,
                "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
            }
    return create_engine(url, **kwargs)


settings = get_settings()
engine = create_engine_from_url(settings.database_url, settings)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(factory: SessionFactory | None = None) -> Generator[Session, None, None]:
    # Resolved at call time so tests can swap the module-level factory.
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session


def insert_if_absent(
    session: Session,
    model: type[Base],
    values: dict[str, Any],
    index_elements: Iterable[str] | None = None,
) -> bool:
    """Insert a row unless a conflicting one exists; True when this call created it."""
    dialect = session.get_bind().dialect.name
    targets = list(index_elements) if index_elements else None

    if dialect in ("sqlite", "postgresql"):
        dialect_insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
        stmt = dialect_insert(model).values(**values).on_conflict_do_nothing(index_elements=targets)
        result = session.execute(stmt)
        return result.rowcount == 1

    nested = session.begin_nested()
    try:
        session.execute(insert(model).values(**values))
        nested.commit()
    except IntegrityError:
        nested.rollback()
        return False
    return True
