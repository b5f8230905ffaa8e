import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func
from sqlalchemy.orm import Session

from kcs_portal.auth import jwt_handler
from kcs_portal.auth.dependencies import authenticate_request, require_admin, require_any_role
from kcs_portal.auth.passwords import hash_password, verify_password
from kcs_portal.database import ConnectionManager
from kcs_portal.dependencies import get_db, get_db_manager
from kcs_portal.models.user import User
from kcs_portal.schemas import UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['auth'])


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if '@' not in normalized or normalized.startswith('@') or normalized.endswith('@'):
        raise ValueError('A valid email address is required.')
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=6, max_length=72)

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=6, max_length=72)
    name: str = Field(min_length=2, max_length=100)
    role: Literal['coach', 'lead', 'manager'] | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return value.strip()


class UpdateRolesRequest(BaseModel):
    is_coach: bool | None = None
    is_lead: bool | None = None
    is_admin: bool | None = None
    is_manager: bool | None = None


def role_claims(user: User) -> dict:
    return {'isAdmin': user.is_admin, 'isLead': user.is_lead, 'isCoach': user.is_coach, 'isManager': user.is_manager}


def issue_token(user: User) -> str:
    return jwt_handler.create_access_token(user.id, user.email, roles=role_claims(user))


def find_active_user_by_email(db: Session, email: str) -> User | None:
    return (
        db.query(User)
        .filter(func.lower(User.email) == email, User.deleted_at.is_(None))
        .first()
    )


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User not found')
    return user


@router.post('/login')
def login(payload: LoginRequest, manager: ConnectionManager = Depends(get_db_manager)):
    def fetch_user() -> User | None:
        db = manager.session()
        try:
            user = find_active_user_by_email(db, payload.email)
            if user is not None:
                db.expunge(user)
            return user
        finally:
            db.close()

    user = manager.execute_with_retry(fetch_user)

    if user is None:
        logger.warning('Login attempt with unknown email: %s', payload.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid credentials')

    # accounts without a stored hash cannot sign in with a password
    if not user.password_hash or not verify_password(payload.password, user.password_hash):
        logger.warning('Login attempt with invalid password for: %s', payload.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid credentials')

    logger.info('User %s (%s) logged in', user.id, user.email)
    return {'user': UserResponse.model_validate(user), 'token': issue_token(user)}


@router.post('/register', status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    if find_active_user_by_email(db, payload.email) is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='User already exists')

    is_first_user = db.query(User).filter(User.deleted_at.is_(None)).count() == 0

    user = User(
        email=payload.email,
        password_hash=hash_password(payload.password),
        name=payload.name,
        is_admin=is_first_user,
        is_coach=payload.role == 'coach',
        is_lead=payload.role == 'lead',
        is_manager=payload.role == 'manager',
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(
        'New user registered: %s with role %s (admin=%s coach=%s lead=%s manager=%s)',
        user.email, payload.role, user.is_admin, user.is_coach, user.is_lead, user.is_manager,
    )
    return {
        'message': 'User registered successfully',
        'user': UserResponse.model_validate(user),
        'token': issue_token(user),
    }


@router.post('/logout')
def logout(current_user: User = Depends(authenticate_request)):
    logger.info('User %s logged out', current_user.id)
    return {'message': 'Logout successful'}


@router.get('/me')
def me(current_user: User = Depends(authenticate_request)):
    return {'user': UserResponse.model_validate(current_user)}


@router.get('/users')
def list_users(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_any_role('admin', 'lead', 'coach')),
):
    users = (
        db.query(User)
        .filter(User.deleted_at.is_(None))
        .order_by(User.created_at.desc(), User.id.desc())
        .all()
    )
    return {'users': [UserResponse.model_validate(user) for user in users]}


@router.put('/users/{user_id}/roles')
def update_user_roles(
    user_id: int,
    payload: UpdateRolesRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    updates = payload.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No role updates provided')

    if current_user.id == user_id and updates.get('is_admin') is False:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Cannot remove your own admin permissions')

    user = get_user_or_404(db, user_id)
    previous = {flag: getattr(user, flag) for flag in updates}
    for flag, value in updates.items():
        setattr(user, flag, value)
    db.commit()
    db.refresh(user)

    logger.info('Admin %s changed roles of user %s from %s to %s', current_user.id, user_id, previous, updates)
    return {'message': 'User roles updated successfully', 'user': UserResponse.model_validate(user)}


@router.delete('/users/{user_id}')
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    if current_user.id == user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Cannot delete your own account')

    user = get_user_or_404(db, user_id)
    if user.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='User is already deleted')

    user.deleted_at = func.current_timestamp()
    db.commit()

    logger.info('User %s (%s) soft deleted by admin %s', user.id, user.email, current_user.id)
    return {'message': 'User deleted successfully'}
