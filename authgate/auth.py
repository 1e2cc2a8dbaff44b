"""
Session identity dependencies.

The first factor lives outside this service; it signs a user in by putting
their id in the signed session cookie (`login_user`) or, when a second
factor is needed, by opening the pending slot through MfaService.begin_login.
"""

import logging
import secrets

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.database import get_db
from authgate.exceptions import AuthenticationError, NoActiveChallengeError
from authgate.models.user import User
from authgate.services.mfa_service import MfaService
from authgate.utils.challenge_store import get_challenge_store

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "sid"
SESSION_USER_KEY = "user_id"


def get_session_id(request: Request) -> str:
    """Stable random id for this browser session, used as the challenge slot key."""
    session_id = request.session.get(SESSION_ID_KEY)
    if not session_id:
        session_id = secrets.token_urlsafe(16)
        request.session[SESSION_ID_KEY] = session_id
    return session_id


async def get_mfa_service(db: AsyncSession = Depends(get_db), store=Depends(get_challenge_store)) -> MfaService:
    return MfaService(db, store)


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    user_id = request.session.get(SESSION_USER_KEY)
    if user_id is None:
        raise AuthenticationError()

    user = await db.get(User, user_id)
    if user is None:
        logger.warning(f"Session refers to missing user {user_id}")
        request.session.pop(SESSION_USER_KEY, None)
        raise AuthenticationError()
    return user


async def get_pending_user(
    session_id: str = Depends(get_session_id),
    service: MfaService = Depends(get_mfa_service),
) -> User:
    """The user who passed the first factor and still owes a second one."""
    user = await service.pending_user(session_id)
    if user is None:
        raise NoActiveChallengeError()
    return user


def login_user(request: Request, user: User) -> None:
    request.session[SESSION_USER_KEY] = user.id
    logger.info(f"User {user.id} signed in", extra={"user_id": user.id})
