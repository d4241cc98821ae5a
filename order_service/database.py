from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for declarative ORM models.
Base = declarative_base()


def build_engine(database_url: str):
    """Create the SQLAlchemy engine for the given connection string."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live as long as their single connection.
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url)


def build_session_factory(engine):
    # Create a configured "Session" class for database interactions.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    """Create tables defined in models.py if they don't exist."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
