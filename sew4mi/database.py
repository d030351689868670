# sew4mi/database.py
import logging

from flask import g
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from sew4mi.config import Config

logger = logging.getLogger(__name__)


def _engine_options(config: type[Config] = Config) -> dict:
    options = {"echo": config.SQL_ECHO, "future": True, "pool_pre_ping": True}
    if config.DATABASE_URL.startswith("sqlite"):
        # Flask serves requests from worker threads
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = Config.DB_POOL_SIZE
        options["max_overflow"] = Config.DB_MAX_OVERFLOW
    return options


engine = create_engine(Config.DATABASE_URL, **_engine_options())
SessionLocal = sessionmaker(bind=engine, autoflush=False, future=True)
Base = declarative_base()


def init_db() -> bool:
    """Create missing tables; models must be imported first so they register on ``Base``."""
    import sew4mi.models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError:
        logger.exception("Error initializing database")
        return False
    logger.info("Database tables initialized", extra={"tables": len(Base.metadata.tables)})
    return True


def get_db():
    """Session bound to the current request; opened lazily, closed on teardown."""
    if "db" not in g:
        g.db = SessionLocal()
    return g.db


def close_db(exception=None):
    session = g.pop("db", None) if g else None
    if session is None:
        return
    if exception is not None:
        session.rollback()
    session.close()
