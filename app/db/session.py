from __future__ import annotations
from typing import Generator
import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Local development runs on SQLite; production points DATABASE_URL at Postgres
# (pip install .[postgres]), e.g. postgresql+psycopg2://flexvolt:flexvolt@db:5432/flexvolt
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./flexvolt.db")


def make_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees its own empty database
        kwargs["poolclass"] = StaticPool
    return create_engine(url, future=True, **kwargs)


engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
