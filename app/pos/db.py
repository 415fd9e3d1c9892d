from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator

from flask import Flask, current_app, g
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Postgres pool sizing for a single store: a handful of cashier tills plus the manager screens.
_POSTGRES_POOL = {"pool_recycle": 1800, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}


def engine_options(db_url: str) -> dict[str, object]:
    opts: dict[str, object] = {"future": True, "pool_pre_ping": True}
    if db_url.startswith("postgres"):
        opts.update(_POSTGRES_POOL)
    elif db_url.startswith("sqlite"):
        # The dev server and test client may touch the file from more than one thread.
        opts["connect_args"] = {"check_same_thread": False}
    return opts


def make_sessionmaker(engine) -> sessionmaker:
    # expire_on_commit=False: handlers keep reading orders/runs after committing a step.
    return sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    engine = create_engine(db_url, **engine_options(db_url))
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = make_sessionmaker(engine)
    app.logger.debug("database engine ready (%s)", engine.url.get_backend_name())


def db_session(app: Flask | None = None) -> Session:
    """Request-scoped session, created on first use and closed at teardown."""
    s = g.get("db_session")
    if s is None:
        sm = (app or current_app).extensions["sqlalchemy_sessionmaker"]
        s = g.db_session = sm()
    return s


def teardown_db_session(_exc: BaseException | None) -> None:
    s: Session | None = g.pop("db_session", None)
    if s is not None:
        s.close()

@contextmanager
def transaction(app: Flask | None = None, *, serializable: bool = False) -> Generator[Session, None, None]:
    """
    Fresh session wrapping one unit of work: commit on success, rollback on any exception.

    serializable=True binds the session to an engine at SERIALIZABLE isolation, used by
    actions whose correctness depends on re-reading balances or stock inside the transaction
    (drawer withdrawals, dispatch, remit).
    """
    if app is None:
        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    if serializable:
        engine = app.extensions["sqlalchemy_engine"]
        s: Session = sm(bind=engine.execution_options(isolation_level="SERIALIZABLE"))
    else:
        s = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    with transaction(app) as s:
        yield s
