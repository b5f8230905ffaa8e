import logging
from typing import Iterable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kcs_portal.auth import jwt_handler
from kcs_portal.database import ConnectionManager
from kcs_portal.dependencies import get_db_manager
from kcs_portal.models.user import ROLE_FLAGS, User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Unauthorized(HTTPException):
    def __init__(self, detail: str = 'Authentication required') -> None:
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class Forbidden(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def load_user_for_token(token: str, manager: ConnectionManager) -> User:
    payload = jwt_handler.decode_access_token(token)
    user_id = int(payload['sub'])

    def fetch_user() -> User | None:
        db = manager.session()
        try:
            user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
            if user is not None:
                db.expunge(user)
            return user
        finally:
            db.close()

    user = manager.execute_with_retry(fetch_user)
    if user is None:
        raise LookupError('User not found')
    return user


def authenticate_request(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    manager: ConnectionManager = Depends(get_db_manager),
) -> User:
    if credentials is None or not credentials.credentials:
        raise Unauthorized('Access token required')

    try:
        user = load_user_for_token(credentials.credentials, manager)
    except Exception as exc:
        logger.warning('Token verification failed: %s', exc)
        raise Forbidden('Invalid or expired token') from exc

    request.state.user = user
    return user


def ensure_admin(user: User | None) -> User:
    if user is None:
        raise Unauthorized()
    if not user.is_admin:
        raise Forbidden('Admin access required')
    return user


def ensure_lead(user: User | None) -> User:
    if user is None:
        raise Unauthorized()
    if not user.is_lead and not user.is_admin:
        raise Forbidden('Lead access required')
    return user


def ensure_coach(user: User | None) -> User:
    if user is None:
        raise Unauthorized()
    if not user.is_coach and not user.is_admin:
        raise Forbidden('Coach access required')
    return user


def ensure_any_role(user: User | None, roles: Iterable[str]) -> User:
    roles = list(roles)
    if user is None:
        raise Unauthorized()
    if not any(role in ROLE_FLAGS and user.has_role(role) for role in roles):
        raise Forbidden(f"Access denied. Required roles: {', '.join(roles)}")
    return user


def require_admin(user: User = Depends(authenticate_request)) -> User:
    return ensure_admin(user)


def require_lead(user: User = Depends(authenticate_request)) -> User:
    return ensure_lead(user)


def require_coach(user: User = Depends(authenticate_request)) -> User:
    return ensure_coach(user)


def require_any_role(*roles: str):
    def dependency(user: User = Depends(authenticate_request)) -> User:
        return ensure_any_role(user, roles)

    return dependency
