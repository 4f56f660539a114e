"""Database helpers for rsvpcore."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import String, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.sql.functions import FunctionElement

from .config import settings

DATABASE_URL = settings.database_url


def build_engine(url: str, **kwargs) -> Engine:
    """Create an engine; SQLite connections get a busy timeout, FK enforcement
    and the ``unicode_lower`` function."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", settings.sqlite_busy_timeout_seconds)
        kwargs["connect_args"] = connect_args
    new_engine = create_engine(url, future=True, **kwargs)
    if new_engine.dialect.name == "sqlite":
        event.listen(new_engine, "connect", _configure_sqlite_connection)
    return new_engine


def _fold_case(value):
    return value.lower() if isinstance(value, str) else value


def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # SQLite's built-in lower() only folds ASCII letters.
    dbapi_connection.create_function(
        "unicode_lower", 1, _fold_case, deterministic=True
    )


class unicode_lower(FunctionElement):
    """Lower-case a text expression, non-ASCII letters included."""

    type = String()
    name = "unicode_lower"
    inherit_cache = True


@compiles(unicode_lower)
def _compile_unicode_lower(element, compiler, **kw):
    return "lower(%s)" % compiler.process(element.clauses, **kw)


@compiles(unicode_lower, "sqlite")
def _compile_unicode_lower_sqlite(element, compiler, **kw):
    return "unicode_lower(%s)" % compiler.process(element.clauses, **kw)


engine = build_engine(DATABASE_URL)
SessionLocal = scoped_session(
    sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,
    )
)


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session.

    One ``with`` block is one unit of work: it commits when the block exits
    cleanly and rolls back when anything is raised, including business errors.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
