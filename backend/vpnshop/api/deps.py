"""FastAPI dependencies: DB session and the admin token check."""
import hmac
from typing import Generator, Optional

from fastapi import Header
from sqlalchemy.orm import Session

from vpnshop.core.config import settings
from vpnshop.core.exceptions import BusinessError
from vpnshop.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """
    Gate for the read-only admin endpoints.

    Answers 404 when the token is missing, wrong, or not configured at all,
    so the endpoints are invisible without it.
    """
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise BusinessError.not_found("admin api", "ADMIN_API_TOKEN not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise BusinessError.not_found("admin api", "bad admin token")
