import logging
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, text
from sqlalchemy.orm import Session, aliased

from kcs_portal.auth.dependencies import require_admin, require_any_role
from kcs_portal.core import config
from kcs_portal.database import ConnectionManager
from kcs_portal.dependencies import get_db, get_db_manager
from kcs_portal.models.manager_assignment import ManagerAssignment
from kcs_portal.models.user import User
from kcs_portal.schemas import UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['admin'])

BACKUP_PREFIX = 'kcs_portal_backup_'
SCHEMA_PREVIEW_LENGTH = 500


class ChangeDatabaseRequest(BaseModel):
    newDbPath: str = Field(min_length=1)

    @field_validator('newDbPath')
    @classmethod
    def validate_extension(cls, value: str) -> str:
        value = value.strip()
        if not value.endswith(config.ALLOWED_DB_EXTENSIONS):
            raise ValueError('Invalid database file extension. Must be .db, .sqlite, or .sqlite3.')
        return value


class ManagerAssignmentRequest(BaseModel):
    manager_id: int
    assigned_to: int


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def database_status(manager: ConnectionManager) -> dict:
    healthy = manager.health_check()
    stats = manager.file_stats()
    return {
        'status': 'healthy' if healthy else 'unhealthy',
        'path': str(manager.db_path),
        'size': stats['size'],
        'lastModified': stats['last_modified'],
        'timestamp': utc_timestamp(),
    }


def backup_filename(now: datetime) -> str:
    return f"{BACKUP_PREFIX}{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}.db"


def list_backup_files(backup_dir: Path) -> list[dict]:
    if not backup_dir.exists():
        return []

    backups = []
    for path in backup_dir.glob('*.db'):
        stats = path.stat()
        backups.append({
            'filename': path.name,
            'path': str(path),
            'size': stats.st_size,
            'created': datetime.fromtimestamp(stats.st_mtime),
        })
    return sorted(backups, key=lambda backup: backup['created'], reverse=True)


def schema_objects(db: Session, object_type: str, columns: tuple[str, ...]) -> list[dict]:
    query = text(
        f"SELECT {', '.join(columns)} FROM sqlite_master "
        "WHERE type = :object_type AND name NOT LIKE 'sqlite_%' "
        "ORDER BY tbl_name, name"
    )
    return [dict(row._mapping) for row in db.execute(query, {'object_type': object_type})]


def preview_text(content: str) -> str:
    if len(content) <= SCHEMA_PREVIEW_LENGTH:
        return content
    return content[:SCHEMA_PREVIEW_LENGTH] + '...'


def require_self_unless_admin(current_user: User, manager_id: int, detail: str) -> None:
    if not current_user.is_admin and current_user.id != manager_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def active_user(db: Session, user_id: int) -> User | None:
    return db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()


def active_assignment(db: Session, manager_id: int, assigned_to: int) -> ManagerAssignment | None:
    return (
        db.query(ManagerAssignment)
        .filter(
            ManagerAssignment.manager_id == manager_id,
            ManagerAssignment.assigned_to == assigned_to,
            ManagerAssignment.deleted_at.is_(None),
        )
        .first()
    )


def serialize_manager_assignment(assignment: ManagerAssignment) -> dict:
    return {
        'assignment_id': assignment.id,
        'assignment_date': assignment.created_at,
        'manager_id': assignment.manager_id,
        'manager_name': assignment.manager.name,
        'manager_email': assignment.manager.email,
        'user_id': assignment.assigned_to,
        'user_name': assignment.user.name,
        'user_email': assignment.user.email,
    }


@router.get('/database/status')
def get_database_status(
    manager: ConnectionManager = Depends(get_db_manager),
    current_user: User = Depends(require_admin),
):
    return database_status(manager)


@router.post('/database/backup')
def create_backup(
    manager: ConnectionManager = Depends(get_db_manager),
    current_user: User = Depends(require_admin),
):
    destination = Path(config.BACKUP_DIR) / backup_filename(datetime.now())
    backup_path = manager.backup(destination)
    stats = backup_path.stat()

    logger.info('Database backup created by admin %s: %s', current_user.id, backup_path)
    return {
        'message': 'Database backup created successfully',
        'backupPath': str(backup_path),
        'size': stats.st_size,
        'timestamp': datetime.fromtimestamp(stats.st_mtime),
    }


@router.get('/database/backups')
def get_backups(current_user: User = Depends(require_admin)):
    return {'backups': list_backup_files(Path(config.BACKUP_DIR))}


@router.get('/database/schema')
def get_database_schema(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    """Tables, indexes and triggers as recorded in ``sqlite_master``."""
    return {
        'tables': schema_objects(db, 'table', ('name', 'sql')),
        'indexes': schema_objects(db, 'index', ('name', 'sql', 'tbl_name')),
        'triggers': schema_objects(db, 'trigger', ('name', 'sql', 'tbl_name')),
        'timestamp': utc_timestamp(),
    }


@router.get('/database/migrations')
def get_database_migrations(
    manager: ConnectionManager = Depends(get_db_manager),
    current_user: User = Depends(require_admin),
):
    schema_path = manager.schema_path
    if not schema_path.exists():
        return {'migrations': []}

    stats = schema_path.stat()
    content = schema_path.read_text(encoding='utf-8')
    return {
        'migrations': [{
            'filename': schema_path.name,
            'path': str(schema_path),
            'size': stats.st_size,
            'modified': datetime.fromtimestamp(stats.st_mtime),
            'content': preview_text(content),
            'type': 'schema',
        }]
    }


@router.post('/database/change-db')
def change_database(
    payload: ChangeDatabaseRequest,
    manager: ConnectionManager = Depends(get_db_manager),
    current_user: User = Depends(require_admin),
):
    new_path = manager.switch_path(payload.newDbPath)

    logger.info('Admin %s changed database path to %s', current_user.id, new_path)
    return {
        'message': f'Database path changed to {payload.newDbPath}. Please verify status.',
        'newPath': str(new_path),
        **{key: value for key, value in database_status(manager).items() if key != 'path'},
    }


@router.get('/managers/assignments')
def get_manager_assignments(db: Session = Depends(get_db), current_user: User = Depends(require_admin)):
    manager_user = aliased(User)
    assigned_user = aliased(User)
    assignments = (
        db.query(ManagerAssignment)
        .join(manager_user, ManagerAssignment.manager_id == manager_user.id)
        .join(assigned_user, ManagerAssignment.assigned_to == assigned_user.id)
        .filter(
            ManagerAssignment.deleted_at.is_(None),
            manager_user.deleted_at.is_(None),
            assigned_user.deleted_at.is_(None),
        )
        .order_by(manager_user.name.asc(), assigned_user.name.asc())
        .all()
    )
    return {'assignments': [serialize_manager_assignment(assignment) for assignment in assignments]}


@router.get('/managers/{manager_id}/users')
def get_users_for_manager(
    manager_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_any_role('admin', 'manager')),
):
    require_self_unless_admin(current_user, manager_id, 'Access denied: You can only view your own assigned users')

    users = (
        db.query(User)
        .join(ManagerAssignment, ManagerAssignment.assigned_to == User.id)
        .filter(
            ManagerAssignment.manager_id == manager_id,
            ManagerAssignment.deleted_at.is_(None),
            User.deleted_at.is_(None),
        )
        .order_by(User.name.asc())
        .all()
    )
    return {'users': [UserResponse.model_validate(user) for user in users]}


@router.get('/users/{user_id}/manager')
def get_manager_for_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_any_role('admin', 'manager')),
):
    manager = (
        db.query(User)
        .join(ManagerAssignment, ManagerAssignment.manager_id == User.id)
        .filter(
            ManagerAssignment.assigned_to == user_id,
            ManagerAssignment.deleted_at.is_(None),
            User.deleted_at.is_(None),
        )
        .order_by(ManagerAssignment.created_at.desc(), ManagerAssignment.id.desc())
        .first()
    )
    return {'manager': UserResponse.model_validate(manager) if manager else None}


@router.post('/managers/assign', status_code=status.HTTP_201_CREATED)
def assign_manager(
    payload: ManagerAssignmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_any_role('admin', 'manager')),
):
    require_self_unless_admin(current_user, payload.manager_id, 'Access denied: You can only assign yourself as a manager')

    manager = active_user(db, payload.manager_id)
    if manager is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Manager not found')
    if not manager.is_manager:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Assigned user does not have the manager role')
    if active_user(db, payload.assigned_to) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='User to assign manager to not found')

    existing = active_assignment(db, payload.manager_id, payload.assigned_to)
    if existing is not None:
        logger.warning('Manager %s is already assigned to user %s', payload.manager_id, payload.assigned_to)
        return {'message': 'Assignment already exists', 'assignment': serialize_manager_assignment(existing)}

    assignment = ManagerAssignment(manager_id=payload.manager_id, assigned_to=payload.assigned_to)
    db.add(assignment)
    db.commit()
    db.refresh(assignment)

    logger.info('Manager %s assigned to user %s by %s', payload.manager_id, payload.assigned_to, current_user.id)
    return {'message': 'Manager assigned successfully', 'assignment': serialize_manager_assignment(assignment)}


@router.post('/managers/remove')
def remove_manager(
    payload: ManagerAssignmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_any_role('admin', 'manager')),
):
    require_self_unless_admin(current_user, payload.manager_id, 'Access denied: You can only remove yourself as a manager')

    assignment = active_assignment(db, payload.manager_id, payload.assigned_to)
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Active assignment not found')

    assignment.deleted_at = func.current_timestamp()
    db.commit()

    logger.info('Manager %s removed from user %s by %s', payload.manager_id, payload.assigned_to, current_user.id)
    return {'message': 'Manager assignment removed successfully'}
