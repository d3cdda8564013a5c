import functools

from sqlalchemy import create_engine, event
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import get_settings
from .errors import StorageFailure

DATABASE_URL = get_settings().database_url

if DATABASE_URL.startswith("sqlite"):
    sqlite_args = {"check_same_thread": False, "timeout": 30}
else:
    sqlite_args = {}

engine = create_engine(DATABASE_URL, connect_args=sqlite_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def enable_sqlite_foreign_keys(target_engine):
    """Turn on FK enforcement so room deletes cascade to content rows on SQLite."""

    if target_engine.dialect.name != "sqlite":
        return

    @event.listens_for(target_engine, "connect")
    def _set_pragma(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db):
    """Commit the unit of work; integrity conflicts propagate, backend faults become StorageFailure."""

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageFailure(f"Database write failed: {exc.__class__.__name__}") from exc


def translate_db_errors(func):
    """Surface driver faults raised inside a core operation as StorageFailure.

    Integrity conflicts still propagate so callers can map them to domain errors.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise StorageFailure(f"Database unavailable: {exc.__class__.__name__}") from exc

    return wrapper
