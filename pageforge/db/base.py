from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from pageforge.config import settings


def _engine_for(url: str) -> Engine:
    connect_args: dict = {}
    if url.startswith("postgresql"):
        connect_args["connect_timeout"] = settings.DB_CONNECT_TIMEOUT_SECONDS
    elif url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, future=True, pool_pre_ping=settings.DB_POOL_PRE_PING, connect_args=connect_args)


engine: Optional[Engine] = _engine_for(settings.DATABASE_URL) if settings.DATABASE_URL else None
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class Base(DeclarativeBase):
    pass
