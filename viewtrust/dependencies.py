"""
FastAPI dependencies for the ViewTrust rewards core
"""
from typing import Generator, Optional
from fastapi import Header
from sqlalchemy.orm import Session
from viewtrust.db.database import SessionLocal
from viewtrust.config import settings
from viewtrust.errors import UnauthorizedError


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, resolved upstream by the auth service"""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError()
    return x_user_id.strip()


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise UnauthorizedError("Invalid or missing API key")
    return x_api_key
