from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from clinicops.config import settings

settings.validate_database_url()

# SQLite doesn't support pool_size/max_overflow, PostgreSQL does
if settings.DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
