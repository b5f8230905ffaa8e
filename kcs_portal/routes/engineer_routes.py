import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from kcs_portal.auth.dependencies import authenticate_request
from kcs_portal.dependencies import get_db
from kcs_portal.models.engineer import CoachAssignment, Engineer
from kcs_portal.models.user import User
from kcs_portal.schemas import CoachAssignmentResponse, EngineerResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['engineers'])

SEARCH_RESULT_LIMIT = 20


class CreateEngineerRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    lead_user_id: int | None = Field(default=None, gt=0)

    @field_validator('name')
    @classmethod
    def validate_name(cls, value: str) -> str:
        return value.strip()


class UpdateEngineerRequest(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    lead_user_id: int | None = Field(default=None, gt=0)
    is_active: bool | None = None

    @model_validator(mode='after')
    def validate_not_empty(self) -> 'UpdateEngineerRequest':
        if not self.model_fields_set:
            raise ValueError('At least one field must be provided.')
        return self


class CreateAssignmentRequest(BaseModel):
    engineer_id: int = Field(gt=0)
    coach_user_id: int = Field(gt=0)
    start_date: date


class EndAssignmentRequest(BaseModel):
    end_date: date


def has_any_role(user: User) -> bool:
    return bool(user.is_admin or user.is_lead or user.is_coach or user.is_manager)


def can_manage_engineers(user: User) -> bool:
    return bool(user.is_admin or user.is_lead or user.is_manager)


def is_scoped_lead(user: User) -> bool:
    """A lead without admin rights may only touch their own engineers."""
    return bool(user.is_lead and not user.is_admin)


def require_any_portal_role(user: User) -> None:
    if not has_any_role(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')


def require_manage_permission(user: User) -> None:
    if not can_manage_engineers(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admin or Lead access required')


def get_engineer_or_404(db: Session, engineer_id: int) -> Engineer:
    engineer = db.query(Engineer).filter(Engineer.id == engineer_id).first()
    if engineer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Engineer not found')
    return engineer


def list_engineers(db: Session, lead_user_id: int | None = None, is_active: bool | None = None) -> list[Engineer]:
    query = db.query(Engineer)
    if lead_user_id is not None:
        query = query.filter(Engineer.lead_user_id == lead_user_id)
    if is_active is not None:
        query = query.filter(Engineer.is_active.is_(is_active))
    return query.order_by(Engineer.name.asc()).all()


def engineers_for_coach(db: Session, coach_user_id: int) -> list[Engineer]:
    return (
        db.query(Engineer)
        .join(CoachAssignment, CoachAssignment.engineer_id == Engineer.id)
        .filter(
            CoachAssignment.coach_user_id == coach_user_id,
            CoachAssignment.is_active.is_(True),
            Engineer.is_active.is_(True),
        )
        .distinct()
        .order_by(Engineer.name.asc())
        .all()
    )


def active_assignments_query(db: Session):
    return (
        db.query(CoachAssignment)
        .join(Engineer, CoachAssignment.engineer_id == Engineer.id)
        .filter(CoachAssignment.is_active.is_(True), Engineer.is_active.is_(True))
    )


def serialize_engineers(engineers: list[Engineer]) -> list[EngineerResponse]:
    return [EngineerResponse.model_validate(engineer) for engineer in engineers]


def serialize_assignments(assignments: list[CoachAssignment]) -> list[CoachAssignmentResponse]:
    return [CoachAssignmentResponse.model_validate(assignment) for assignment in assignments]


@router.get('/')
def get_engineers(db: Session = Depends(get_db), current_user: User = Depends(authenticate_request)):
    require_any_portal_role(current_user)
    return {'engineers': serialize_engineers(list_engineers(db))}


@router.get('/for-evaluation')
def get_engineers_for_evaluation(db: Session = Depends(get_db), current_user: User = Depends(authenticate_request)):
    require_any_portal_role(current_user)
    return {'engineers': serialize_engineers(list_engineers(db, is_active=True))}


@router.get('/by-coach/{coach_id}')
def get_engineers_by_coach(
    coach_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not current_user.is_admin and current_user.id != coach_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')
    return {'engineers': serialize_engineers(engineers_for_coach(db, coach_id))}


@router.get('/by-lead/{lead_id}')
def get_engineers_by_lead(
    lead_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not current_user.is_admin and current_user.id != lead_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')
    return {'engineers': serialize_engineers(list_engineers(db, lead_user_id=lead_id, is_active=True))}


@router.get('/search')
def search_engineers(
    q: str = Query(default=''),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    term = q.strip()
    if not term:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Search term is required')
    require_any_portal_role(current_user)

    query = db.query(Engineer).filter(Engineer.name.ilike(f'%{term}%'), Engineer.is_active.is_(True))
    if is_scoped_lead(current_user):
        query = query.filter(Engineer.lead_user_id == current_user.id)
    engineers = query.order_by(Engineer.name.asc()).limit(SEARCH_RESULT_LIMIT).all()
    return {'engineers': serialize_engineers(engineers)}


@router.get('/assignments')
def get_assignments(db: Session = Depends(get_db), current_user: User = Depends(authenticate_request)):
    if current_user.is_admin or current_user.is_manager:
        assignments = db.query(CoachAssignment).order_by(CoachAssignment.start_date.desc()).all()
    elif current_user.is_lead:
        assignments = (
            active_assignments_query(db)
            .filter(Engineer.lead_user_id == current_user.id)
            .order_by(Engineer.name.asc(), CoachAssignment.start_date.desc())
            .all()
        )
    elif current_user.is_coach:
        assignments = (
            active_assignments_query(db)
            .filter(CoachAssignment.coach_user_id == current_user.id)
            .order_by(Engineer.name.asc())
            .all()
        )
    else:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')
    return {'assignments': serialize_assignments(assignments)}


@router.post('/assignments', status_code=status.HTTP_201_CREATED)
def create_assignment(
    payload: CreateAssignmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    require_manage_permission(current_user)

    engineer = get_engineer_or_404(db, payload.engineer_id)
    if is_scoped_lead(current_user) and engineer.lead_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')

    coach = db.query(User).filter(User.id == payload.coach_user_id, User.deleted_at.is_(None)).first()
    if coach is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Coach not found')

    pair = db.query(CoachAssignment).filter(
        CoachAssignment.engineer_id == payload.engineer_id,
        CoachAssignment.coach_user_id == payload.coach_user_id,
    )
    if pair.filter(CoachAssignment.is_active.is_(True)).first() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Active assignment already exists for this engineer-coach pair',
        )

    assignment = pair.filter(
        CoachAssignment.start_date == payload.start_date,
        CoachAssignment.is_active.is_(False),
    ).first()
    if assignment is not None:
        assignment.is_active = True
        assignment.end_date = None
        logger.info('Coach assignment %s reactivated', assignment.id)
    else:
        assignment = CoachAssignment(
            engineer_id=payload.engineer_id,
            coach_user_id=payload.coach_user_id,
            start_date=payload.start_date,
        )
        db.add(assignment)

    db.commit()
    db.refresh(assignment)

    logger.info(
        'User %s assigned coach %s to engineer %s (assignment %s)',
        current_user.id, payload.coach_user_id, payload.engineer_id, assignment.id,
    )
    return {
        'message': 'Coach assignment created successfully',
        'assignment': CoachAssignmentResponse.model_validate(assignment),
    }


@router.put('/assignments/{assignment_id}/end')
def end_assignment(
    assignment_id: int,
    payload: EndAssignmentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    require_manage_permission(current_user)

    assignment = db.query(CoachAssignment).filter(CoachAssignment.id == assignment_id).first()
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Assignment not found')

    if is_scoped_lead(current_user) and assignment.engineer.lead_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')

    assignment.end_date = payload.end_date
    assignment.is_active = False
    db.commit()
    db.refresh(assignment)

    logger.info('User %s ended coach assignment %s', current_user.id, assignment_id)
    return {
        'message': 'Coach assignment ended successfully',
        'assignment': CoachAssignmentResponse.model_validate(assignment),
    }


@router.get('/{engineer_id}')
def get_engineer(
    engineer_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    engineer = get_engineer_or_404(db, engineer_id)
    require_any_portal_role(current_user)

    if not current_user.is_admin:
        if current_user.is_lead and engineer.lead_user_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')

        if current_user.is_coach:
            assigned_ids = {assigned.id for assigned in engineers_for_coach(db, current_user.id)}
            if engineer_id not in assigned_ids:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')

    return {'engineer': EngineerResponse.model_validate(engineer)}


@router.post('/', status_code=status.HTTP_201_CREATED)
def create_engineer(
    payload: CreateEngineerRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    require_manage_permission(current_user)

    lead_user_id = payload.lead_user_id
    if lead_user_id is None and is_scoped_lead(current_user):
        lead_user_id = current_user.id

    engineer = Engineer(name=payload.name, lead_user_id=lead_user_id)
    db.add(engineer)
    db.commit()
    db.refresh(engineer)

    logger.info('User %s created engineer %s (%s)', current_user.id, engineer.id, engineer.name)
    return {'message': 'Engineer created successfully', 'engineer': EngineerResponse.model_validate(engineer)}


@router.put('/{engineer_id}')
def update_engineer(
    engineer_id: int,
    payload: UpdateEngineerRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    engineer = get_engineer_or_404(db, engineer_id)
    require_manage_permission(current_user)

    if is_scoped_lead(current_user) and engineer.lead_user_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Access denied')

    updates = payload.model_dump(exclude_unset=True)
    for field, value in updates.items():
        if field != 'lead_user_id' and value is None:
            continue
        setattr(engineer, field, value)
    db.commit()
    db.refresh(engineer)

    logger.info('User %s updated engineer %s: %s', current_user.id, engineer_id, updates)
    return {'message': 'Engineer updated successfully', 'engineer': EngineerResponse.model_validate(engineer)}


@router.get('/{engineer_id}/assignments')
def get_engineer_assignments(
    engineer_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    assignments = (
        db.query(CoachAssignment)
        .filter(CoachAssignment.engineer_id == engineer_id)
        .order_by(CoachAssignment.start_date.desc())
        .all()
    )
    return {'assignments': serialize_assignments(assignments)}
