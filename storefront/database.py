# storefront/database.py
from typing import Any

from sqlmodel import SQLModel, create_engine, Session

from storefront.core.config import get_settings

settings = get_settings()

# ---------------------------------------------------------
# Postgres connection (via pooler)
#
# - sslmode=require   : enforce SSL when running in the cloud
# - pool_size         : DB_POOL_SIZE persistent connections per process
# - max_overflow      : DB_MAX_OVERFLOW extra connections under burst load
# - pool_pre_ping=True: validate connections before using them
#
# SQLite URLs (local runs, tests) skip all of the above.
# ---------------------------------------------------------


def _engine_options(
    db_url: str,
    pool_size: int,
    max_overflow: int,
) -> tuple[str, dict[str, Any]]:
    if db_url.startswith("sqlite"):
        return db_url, {"connect_args": {"check_same_thread": False}}

    # Append sslmode=require if it is not already present
    if "sslmode=" not in db_url:
        if "?" in db_url:
            db_url = db_url + "&sslmode=require"
        else:
            db_url = db_url + "?sslmode=require"

    return db_url, {
        "pool_pre_ping": True,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
    }


db_url, engine_options = _engine_options(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
)

engine = create_engine(
    db_url,
    echo=False,        # set to True if you want to debug SQL queries
    **engine_options,
)


def create_db_and_tables() -> None:
    """
    Create all tables defined in SQLModel metadata if they do not exist.

    This is called once on application startup.
    """
    SQLModel.metadata.create_all(engine)


def get_session():
    """
    FastAPI dependency that yields a SQLModel Session.

    Usage:

        from fastapi import Depends

        @router.get("/example")
        def example_endpoint(session: Session = Depends(get_session)):
            ...
    """
    with Session(engine) as session:
        yield session
