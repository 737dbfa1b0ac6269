"""
Database session management.

Provides explicit ORM session handling with SQLAlchemy.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rankerbot.core.config import Config
from rankerbot.core.models import Base


def get_engine(database_path: str) -> Engine:
    """
    Create SQLAlchemy engine.

    Uses SQLite with WAL mode so concurrent sessions and watchers can share it.
    """
    db_path = Path(database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    with engine.connect() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL"))
        conn.commit()

    return engine


def init_db(config: Config) -> Engine:
    """
    Initialize database schema.

    Creates all tables if they don't exist.
    """
    engine = get_engine(config.database_path)
    Base.metadata.create_all(engine)
    return engine


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Provide transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as session:
            session.add(project)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
