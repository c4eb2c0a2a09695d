"""SQLAlchemy engine and session factory helpers shared by ``SqlStore``."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


def _normalize_db_url(url: str) -> str:
    # Use psycopg v3 driver with SQLAlchemy
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://"):]
    return url


def build_engine(url: str) -> Engine:
    url = _normalize_db_url(url)
    connect_args = {}
    if url.startswith("sqlite"):
        # Worker threads share the pool
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def build_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass
