from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


# The user directory lives here; OTP codes themselves are never stored.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")


def normalize_database_url(url: str) -> str:
    """Pin bare Postgres URLs ("postgres://", "postgresql://") to psycopg v3."""
    scheme, sep, rest = url.partition("://")
    if not sep or "+" in scheme:
        return url
    if scheme in ("postgres", "postgresql"):
        return f"postgresql+psycopg://{rest}"
    return url


def build_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """Create the user directory tables if they are missing."""
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
