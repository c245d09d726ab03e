from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core_settings import get_settings
from app.domain.models import Base

settings = get_settings()


def build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        # worker pools share the engine across threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, echo=False, future=True, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models(bind: Optional[Engine] = None):
    Base.metadata.create_all(bind or engine)
