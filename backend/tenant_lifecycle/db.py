from __future__ import annotations

from sqlalchemy import create_engine
from typing import Generator

from fastapi import Request
from sqlalchemy.orm import Session, sessionmaker

from tenant_lifecycle.settings import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db(request: Request) -> Generator[Session, None, None]:
    session_factory = getattr(request.app.state, "session_factory", SessionLocal)
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
