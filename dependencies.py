from collections.abc import Generator
from typing import Optional

from fastapi import Header, Request
from sqlalchemy.orm import Session

from db import SessionLocal
from loans import LoanEngine

DEFAULT_ACTOR = "system"


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_engine(request: Request) -> LoanEngine:
    return request.app.state.loan_engine


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> str:
    # authentication happens upstream; the caller's id is passed through as-is
    if x_actor_id is None or not x_actor_id.strip():
        return DEFAULT_ACTOR
    return x_actor_id.strip()
