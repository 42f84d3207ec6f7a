from sqlmodel import create_engine, SQLModel

from erpgate.core.config import settings

DATABASE_URL = settings.DATABASE_URL

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,
        pool_timeout=30,
    )


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    import erpgate.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
