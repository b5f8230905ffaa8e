import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func
from sqlalchemy.orm import Session

from kcs_portal.auth.dependencies import authenticate_request
from kcs_portal.dependencies import get_db
from kcs_portal.models.engineer import CoachAssignment, Engineer
from kcs_portal.models.evaluation import CASE_FLAGS, CaseEvaluation, Evaluation
from kcs_portal.models.user import User
from kcs_portal.reporting import EvaluationFilters, parse_id_list, query_evaluations
from kcs_portal.routes.engineer_routes import engineers_for_coach
from kcs_portal.schemas import CaseEvaluationResponse, EvaluationResponse, EvaluationSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['evaluations'])

DEFAULT_CASES_PER_EVALUATION = 7


class CreateEvaluationRequest(BaseModel):
    engineer_id: int = Field(gt=0)
    evaluation_date: date


class UpdateEvaluationRequest(BaseModel):
    evaluation_date: date


class CaseFields(BaseModel):
    case_id: str | None = None
    kb_potential: bool | None = None
    article_linked: bool | None = None
    article_improved: bool | None = None
    improvement_opportunity: bool | None = None
    article_created: bool | None = None
    create_opportunity: bool | None = None
    relevant_link: bool | None = None
    notes: str | None = None


class CreateCaseRequest(CaseFields):
    pass


class UpdateCaseRequest(CaseFields):
    @model_validator(mode='after')
    def validate_not_empty(self) -> 'UpdateCaseRequest':
        if not self.model_fields_set:
            raise ValueError('At least one field must be provided.')
        return self


def require_evaluation_viewer(user: User) -> None:
    if not (user.is_admin or user.is_lead or user.is_coach or user.is_manager):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')


def require_evaluation_editor(user: User) -> None:
    if not user.is_admin and not user.is_coach:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Access denied - admin or coach access required',
        )


def get_evaluation_or_404(db: Session, evaluation_id: int) -> Evaluation:
    evaluation = (
        db.query(Evaluation)
        .filter(Evaluation.id == evaluation_id, Evaluation.deleted_at.is_(None))
        .first()
    )
    if evaluation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Evaluation not found')
    return evaluation


def get_case_or_404(db: Session, case_id: int) -> CaseEvaluation:
    case_evaluation = db.query(CaseEvaluation).filter(CaseEvaluation.id == case_id).first()
    if case_evaluation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Case not found')
    return case_evaluation


def evaluation_exists_for_month(
    db: Session,
    engineer_id: int,
    evaluation_date: date,
    exclude_id: int | None = None,
) -> bool:
    month = evaluation_date.strftime('%Y-%m')
    query = db.query(Evaluation.id).filter(
        Evaluation.engineer_id == engineer_id,
        func.strftime('%Y-%m', Evaluation.evaluation_date) == month,
        Evaluation.deleted_at.is_(None),
    )
    if exclude_id is not None:
        query = query.filter(Evaluation.id != exclude_id)
    return query.first() is not None


def open_evaluation(db: Session, engineer_id: int, evaluation_date: date, created_by: int) -> Evaluation:
    """
    Create an evaluation owned by the engineer's active coach and seed it
    with empty case slots. One live evaluation is allowed per engineer and month.
    """
    if evaluation_exists_for_month(db, engineer_id, evaluation_date):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Evaluation already exists for this engineer and month',
        )

    assignment = (
        db.query(CoachAssignment)
        .filter(CoachAssignment.engineer_id == engineer_id, CoachAssignment.is_active.is_(True))
        .order_by(CoachAssignment.start_date.desc())
        .first()
    )
    if assignment is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='No active coach assignment found for this engineer',
        )

    evaluation = Evaluation(
        engineer_id=engineer_id,
        coach_user_id=assignment.coach_user_id,
        evaluation_date=evaluation_date,
        created_by=created_by,
        updated_by=created_by,
    )
    db.add(evaluation)
    db.flush()
    for case_number in range(1, DEFAULT_CASES_PER_EVALUATION + 1):
        db.add(CaseEvaluation(evaluation_id=evaluation.id, case_number=case_number))
    db.commit()
    return evaluation


def next_case_number(db: Session, evaluation_id: int) -> int:
    # case numbers keep counting past soft-deleted cases
    highest = (
        db.query(func.coalesce(func.max(CaseEvaluation.case_number), 0))
        .filter(CaseEvaluation.evaluation_id == evaluation_id)
        .scalar()
    )
    return highest + 1


def refreshed_evaluation(db: Session, evaluation: Evaluation) -> EvaluationResponse:
    db.expire(evaluation)
    return EvaluationResponse.model_validate(evaluation)


@router.get('/')
def get_evaluations(
    engineer_id: str | None = Query(default=None),
    engineer_ids: str | None = Query(default=None),
    coach_user_id: str | None = Query(default=None),
    coach_user_ids: str | None = Query(default=None),
    lead_user_id: str | None = Query(default=None),
    lead_user_ids: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    year: str | None = Query(default=None),
    years: str | None = Query(default=None),
    month: str | None = Query(default=None),
    months: str | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    require_evaluation_viewer(current_user)

    filters = EvaluationFilters(
        engineer_ids=parse_id_list(engineer_ids, engineer_id),
        coach_user_ids=parse_id_list(coach_user_ids, coach_user_id),
        lead_user_ids=parse_id_list(lead_user_ids, lead_user_id),
        start_date=start_date,
        end_date=end_date,
        years=parse_id_list(years, year),
        months=parse_id_list(months, month),
    )
    evaluations = query_evaluations(db, filters)
    return {'evaluations': [EvaluationSummaryResponse.model_validate(evaluation) for evaluation in evaluations]}


@router.get('/cases/check/{case_id}')
def check_case_id(
    case_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not (current_user.is_admin or current_user.is_coach or current_user.is_manager):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Access denied - admin or coach access required',
        )

    term = case_id.strip()
    if not term:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Case ID is required')

    match = (
        db.query(CaseEvaluation, Evaluation)
        .join(Evaluation, CaseEvaluation.evaluation_id == Evaluation.id)
        .filter(
            CaseEvaluation.case_id == term,
            CaseEvaluation.deleted_at.is_(None),
            Evaluation.deleted_at.is_(None),
        )
        .first()
    )
    if match is None:
        return {'exists': False}

    _, evaluation = match
    return {
        'exists': True,
        'evaluation': {
            'evaluation_id': evaluation.id,
            'evaluation_date': evaluation.evaluation_date,
            'engineer_name': evaluation.engineer_name,
            'coach_name': evaluation.coach_name,
        },
    }


@router.put('/cases/{case_id}')
def update_case(
    case_id: int,
    payload: UpdateCaseRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    case_evaluation = get_case_or_404(db, case_id)
    get_evaluation_or_404(db, case_evaluation.evaluation_id)
    require_evaluation_editor(current_user)

    updates = payload.model_dump(exclude_unset=True)
    for field, value in updates.items():
        if field in CASE_FLAGS and value is None:
            continue
        setattr(case_evaluation, field, value)
    db.commit()
    db.refresh(case_evaluation)

    logger.info('User %s updated case %s: %s', current_user.id, case_id, updates)
    return {'message': 'Case updated successfully', 'case': CaseEvaluationResponse.model_validate(case_evaluation)}


@router.delete('/cases/{case_id}')
def delete_case(
    case_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    case_evaluation = get_case_or_404(db, case_id)
    get_evaluation_or_404(db, case_evaluation.evaluation_id)
    require_evaluation_editor(current_user)

    if case_evaluation.deleted_at is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Case is already deleted')

    case_evaluation.deleted_at = func.current_timestamp()
    db.commit()

    logger.info('User %s deleted case %s of evaluation %s', current_user.id, case_id, case_evaluation.evaluation_id)
    return {'message': 'Case deleted successfully'}


@router.get('/{evaluation_id}')
def get_evaluation(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    evaluation = get_evaluation_or_404(db, evaluation_id)
    require_evaluation_viewer(current_user)
    return {'evaluation': EvaluationResponse.model_validate(evaluation)}


@router.post('/', status_code=status.HTTP_201_CREATED)
def create_evaluation(
    payload: CreateEvaluationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not current_user.is_admin and not current_user.is_coach:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Coach access required')

    engineer = db.query(Engineer).filter(Engineer.id == payload.engineer_id).first()
    if engineer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Engineer not found')

    if current_user.is_coach and not current_user.is_admin:
        assigned_ids = {assigned.id for assigned in engineers_for_coach(db, current_user.id)}
        if payload.engineer_id not in assigned_ids:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Access denied - engineer not assigned to you',
            )

    evaluation = open_evaluation(db, payload.engineer_id, payload.evaluation_date, current_user.id)

    logger.info(
        'User %s created evaluation %s for engineer %s on %s',
        current_user.id, evaluation.id, payload.engineer_id, payload.evaluation_date,
    )
    return {'message': 'Evaluation created successfully', 'evaluation': refreshed_evaluation(db, evaluation)}


@router.put('/{evaluation_id}')
def update_evaluation(
    evaluation_id: int,
    payload: UpdateEvaluationRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    evaluation = get_evaluation_or_404(db, evaluation_id)
    require_evaluation_editor(current_user)

    if evaluation_exists_for_month(db, evaluation.engineer_id, payload.evaluation_date, exclude_id=evaluation_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Evaluation already exists for this engineer and month',
        )

    evaluation.evaluation_date = payload.evaluation_date
    evaluation.updated_by = current_user.id
    db.commit()

    logger.info('User %s moved evaluation %s to %s', current_user.id, evaluation_id, payload.evaluation_date)
    return {'message': 'Evaluation updated successfully', 'evaluation': refreshed_evaluation(db, evaluation)}


@router.post('/{evaluation_id}/cases', status_code=status.HTTP_201_CREATED)
def add_case(
    evaluation_id: int,
    payload: CreateCaseRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    get_evaluation_or_404(db, evaluation_id)
    require_evaluation_editor(current_user)

    if payload.case_id:
        duplicate = (
            db.query(CaseEvaluation.id)
            .filter(
                CaseEvaluation.evaluation_id == evaluation_id,
                CaseEvaluation.case_id == payload.case_id,
                CaseEvaluation.deleted_at.is_(None),
            )
            .first()
        )
        if duplicate is not None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='A case with this ID already exists in this evaluation',
            )

    case_evaluation = CaseEvaluation(
        evaluation_id=evaluation_id,
        case_number=next_case_number(db, evaluation_id),
        case_id=payload.case_id or None,
        notes=payload.notes or None,
        **{flag: bool(getattr(payload, flag)) for flag in CASE_FLAGS},
    )
    db.add(case_evaluation)
    db.commit()
    db.refresh(case_evaluation)

    logger.info('User %s added case %s to evaluation %s', current_user.id, case_evaluation.id, evaluation_id)
    return {'message': 'Case added successfully', 'case': CaseEvaluationResponse.model_validate(case_evaluation)}


@router.delete('/{evaluation_id}')
def delete_evaluation(
    evaluation_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    evaluation = get_evaluation_or_404(db, evaluation_id)
    require_evaluation_editor(current_user)

    if current_user.is_coach and not current_user.is_admin and evaluation.coach_user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Access denied - coaches can only delete their own evaluations',
        )

    evaluation.deleted_at = func.current_timestamp()
    evaluation.updated_by = current_user.id
    db.commit()

    logger.info(
        'User %s deleted evaluation %s (%s, %s)',
        current_user.id, evaluation_id, evaluation.engineer_name, evaluation.evaluation_date,
    )
    return {'message': 'Evaluation deleted successfully'}
