from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine

from app.pos.db import engine_options, make_sessionmaker


def create_script_engine(db_url: str):
    return create_engine(db_url, **engine_options(db_url))


@contextmanager
def script_session(db_url: str):
    """Seed/maintenance work against db_url without building the Flask app."""
    engine = create_script_engine(db_url)
    s = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
