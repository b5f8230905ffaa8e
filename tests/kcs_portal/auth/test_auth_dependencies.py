import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from kcs_portal.auth import jwt_handler
from kcs_portal.auth.dependencies import ensure_admin, ensure_any_role, ensure_coach, ensure_lead
from kcs_portal.database import ConnectionManager
from kcs_portal.main import create_app
from kcs_portal.models.user import User


def _user(**roles) -> User:
    return User(
        id=1,
        name='Flag Holder',
        email='flags@example.com',
        is_admin=roles.get('is_admin', False),
        is_lead=roles.get('is_lead', False),
        is_coach=roles.get('is_coach', False),
        is_manager=roles.get('is_manager', False),
    )


@pytest.mark.parametrize(
    'roles',
    [
        {'is_admin': True},
        {'is_admin': True, 'is_coach': True},
        {'is_admin': True, 'is_lead': True, 'is_manager': True},
    ],
)
def test_admin_passes_admin_check_regardless_of_other_flags(roles) -> None:
    user = _user(**roles)

    assert ensure_admin(user) is user


def test_manager_flag_does_not_grant_admin() -> None:
    with pytest.raises(HTTPException) as exception_info:
        ensure_admin(_user(is_manager=True))

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Admin access required'


def test_coach_only_user_is_rejected_by_lead_check() -> None:
    with pytest.raises(HTTPException) as exception_info:
        ensure_lead(_user(is_coach=True))

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Lead access required'


def test_admin_passes_lead_and_coach_checks() -> None:
    admin = _user(is_admin=True)

    assert ensure_lead(admin) is admin
    assert ensure_coach(admin) is admin


def test_lead_only_user_is_rejected_by_coach_check() -> None:
    with pytest.raises(HTTPException) as exception_info:
        ensure_coach(_user(is_lead=True))

    assert exception_info.value.detail == 'Coach access required'


@pytest.mark.parametrize('check', [ensure_admin, ensure_lead, ensure_coach])
def test_missing_user_is_unauthorized(check) -> None:
    with pytest.raises(HTTPException) as exception_info:
        check(None)

    assert exception_info.value.status_code == 401
    assert exception_info.value.detail == 'Authentication required'


def test_any_role_accepts_matching_flag() -> None:
    manager = _user(is_manager=True)

    assert ensure_any_role(manager, ['admin', 'manager']) is manager


def test_any_role_never_matches_unknown_role_names() -> None:
    with pytest.raises(HTTPException) as exception_info:
        ensure_any_role(_user(is_admin=True, is_lead=True), ['superuser', 'owner'])

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Access denied. Required roles: superuser, owner'


def test_any_role_without_user_is_unauthorized() -> None:
    with pytest.raises(HTTPException) as exception_info:
        ensure_any_role(None, ['coach'])

    assert exception_info.value.status_code == 401


def test_request_without_authorization_header_is_rejected_before_store_access(tmp_path) -> None:
    manager = ConnectionManager(tmp_path / 'untouched.db')
    client = TestClient(create_app(manager))

    response = client.get('/api/auth/me')

    assert response.status_code == 401
    assert response.json() == {'error': 'Access token required'}
    assert not manager.is_initialized
    assert not (tmp_path / 'untouched.db').exists()


def test_non_bearer_authorization_header_is_unauthorized(db_manager) -> None:
    client = TestClient(create_app(db_manager))

    response = client.get('/api/auth/me', headers={'Authorization': 'Basic abc123'})

    assert response.status_code == 401


def test_invalid_token_is_forbidden(db_manager) -> None:
    client = TestClient(create_app(db_manager))

    response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-jwt'})

    assert response.status_code == 403
    assert response.json() == {'error': 'Invalid or expired token'}


def test_expired_token_is_forbidden(db_manager, make_user) -> None:
    user = make_user(is_coach=True)
    token = jwt_handler.create_access_token(user.id, user.email, expires_minutes=-5)
    client = TestClient(create_app(db_manager))

    response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 403


def test_token_for_deleted_user_is_forbidden(db_manager, db, make_user) -> None:
    user = make_user(email='gone@example.com')
    token = jwt_handler.create_access_token(user.id, user.email)
    user.deleted_at = user.created_at
    db.commit()
    client = TestClient(create_app(db_manager))

    response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 403


def test_valid_token_attaches_current_user(db_manager, make_user) -> None:
    user = make_user(name='Casey Coach', email='casey@example.com', is_coach=True)
    token = jwt_handler.create_access_token(user.id, user.email)
    client = TestClient(create_app(db_manager))

    response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})

    assert response.status_code == 200
    body = response.json()['user']
    assert body['email'] == 'casey@example.com'
    assert body['is_coach'] is True
    assert 'password_hash' not in body
