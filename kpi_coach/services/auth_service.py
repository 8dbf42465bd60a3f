"""Authentication service: session lookup and the ingest service token"""
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from kpi_coach.config import get_settings
from kpi_coach.models.user import User, UserSession


def create_session(db: Session, user_id: int, hours: int = 12) -> str:
    """Create a session token for the user. Login itself lives in the CRM."""
    token = secrets.token_hex(32)
    session = UserSession(
        user_id=user_id,
        token=token,
        expires_at=datetime.utcnow() + timedelta(hours=hours),
    )
    db.add(session)
    db.commit()
    return token


def validate_session(db: Session, token: str) -> Optional[User]:
    """Return the active user for a valid, non-expired session token."""
    session = (
        db.query(UserSession)
        .filter(UserSession.token == token, UserSession.expires_at > datetime.utcnow())
        .first()
    )
    if not session:
        return None
    return db.query(User).filter(User.id == session.user_id, User.is_active == True).first()


def check_service_token(token: Optional[str]) -> bool:
    """Constant-time check of the shared ingest token. An unset token rejects everything."""
    expected = get_settings().ingest_service_token
    if not expected or not token:
        return False
    return secrets.compare_digest(token.encode(), expected.encode())
