from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings


def build_database_url(database_url):
    # Hosted Postgres hands out postgres:// URLs, SQLAlchemy needs postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    if database_url.startswith("postgresql") and "sslmode" not in database_url:
        if "?" in database_url:
            database_url += "&sslmode=require"
        else:
            database_url += "?sslmode=require"
    return database_url


DATABASE_URL = get_settings().database_url

if DATABASE_URL:
    # Production: PostgreSQL
    engine = create_engine(build_database_url(DATABASE_URL), pool_pre_ping=True)
else:
    # Local development: SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./docsign.db"
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
