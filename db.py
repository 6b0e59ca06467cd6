from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings


def make_engine(url: str):
    """
    Build the engine for the event log.
    SQLite needs cross-thread access because handlers and the
    mail executor share one engine.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def make_session_factory(bind) -> sessionmaker:
    return sessionmaker(
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
    )


# Create SQLAlchemy engine
engine = make_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = make_session_factory(engine)

# Base class for all ORM models
Base = declarative_base()


def init_db(bind=None) -> None:
    """
    Create the event and state tables if they are missing.
    """
    import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """
    Dependency that provides a database session
    and ensures it is closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
