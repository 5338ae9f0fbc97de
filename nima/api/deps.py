"""
nima/api/deps.py
────────────────
Caller identity. The gateway in front of the service authenticates the
request and forwards the identity provider's subject in X-Auth-Subject.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlmodel import Session, select

from nima.core.exceptions import NotAuthenticatedError, UserNotFoundError
from nima.database import get_session
from nima.models import User


def lookup_user(session: Session, auth_subject: Optional[str]) -> User:
    if not auth_subject:
        raise NotAuthenticatedError()
    user = session.exec(select(User).where(User.auth_subject == auth_subject)).first()
    if user is None:
        raise UserNotFoundError()
    return user


def get_auth_subject(
    x_auth_subject: Optional[str] = Header(default=None, max_length=128),
) -> Optional[str]:
    return x_auth_subject


def get_current_user(
    auth_subject: Optional[str] = Depends(get_auth_subject),
    session: Session = Depends(get_session),
) -> User:
    return lookup_user(session, auth_subject)
