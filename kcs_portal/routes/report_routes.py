import logging
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from kcs_portal.auth.dependencies import authenticate_request, require_lead
from kcs_portal.dependencies import get_db
from kcs_portal.models.user import User
from kcs_portal.reporting import (
    QUARTER_MONTHS,
    EvaluationFilters,
    generate_stats,
    parse_id_list,
    query_evaluations,
)
from kcs_portal.routes.engineer_routes import list_engineers, serialize_engineers
from kcs_portal.schemas import EvaluationSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=['reports'])

Quarter = Literal['Q1', 'Q2', 'Q3', 'Q4']


def scope_to_user(filters: EvaluationFilters, user: User) -> EvaluationFilters:
    """Admins see everything, leads their engineers and coaches their own evaluations."""
    if user.is_admin:
        return filters
    if user.is_lead:
        return filters.model_copy(update={'lead_user_ids': [user.id]})
    if user.is_coach:
        return filters.model_copy(update={'coach_user_ids': [user.id]})
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')


def date_filters(
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    year: int | None = Query(default=None, ge=2020, le=2100),
    quarter: Quarter | None = Query(default=None),
) -> EvaluationFilters:
    return EvaluationFilters(
        start_date=start_date,
        end_date=end_date,
        years=[year] if year is not None else [],
        quarter=quarter,
    )


def report_filters(
    engineer_id: str | None = Query(default=None),
    engineer_ids: str | None = Query(default=None),
    coach_user_id: str | None = Query(default=None),
    lead_user_id: str | None = Query(default=None),
    base_filters: EvaluationFilters = Depends(date_filters),
) -> EvaluationFilters:
    return base_filters.model_copy(
        update={
            'engineer_ids': parse_id_list(engineer_ids, engineer_id),
            'coach_user_ids': parse_id_list(coach_user_id),
            'lead_user_ids': parse_id_list(lead_user_id),
        }
    )


@router.get('/stats')
def get_stats(
    filters: EvaluationFilters = Depends(report_filters),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    filters = scope_to_user(filters, current_user)
    return {'stats': generate_stats(db, filters), 'filters': filters}


@router.get('/evaluations')
def get_report_evaluations(
    filters: EvaluationFilters = Depends(report_filters),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    """Evaluation rows behind a report figure, used for quarter drill-downs."""
    filters = scope_to_user(filters, current_user)
    evaluations = query_evaluations(db, filters)
    return {
        'evaluations': [EvaluationSummaryResponse.model_validate(evaluation) for evaluation in evaluations],
        'filters': filters,
    }


@router.get('/engineers')
def get_report_engineers(
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not (current_user.is_admin or current_user.is_lead or current_user.is_coach):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Insufficient permissions')
    return {'engineers': serialize_engineers(list_engineers(db, is_active=True))}


@router.get('/my-team')
def get_team_stats(
    base_filters: EvaluationFilters = Depends(date_filters),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_lead),
):
    filters = base_filters
    if not current_user.is_admin:
        filters = filters.model_copy(update={'lead_user_ids': [current_user.id]})
    return {'stats': generate_stats(db, filters), 'filters': filters}


@router.get('/engineer/{engineer_id}')
def get_engineer_stats(
    engineer_id: int,
    base_filters: EvaluationFilters = Depends(date_filters),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    filters = base_filters.model_copy(update={'engineer_ids': [engineer_id]})
    filters = scope_to_user(filters, current_user)
    return {'stats': generate_stats(db, filters), 'filters': filters, 'engineer_id': engineer_id}


@router.get('/quarterly')
def get_quarterly_stats(
    year: int | None = Query(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if year is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Year parameter is required')

    base = scope_to_user(EvaluationFilters(years=[year]), current_user)
    quarterly_stats = {
        quarter: generate_stats(db, base.model_copy(update={'quarter': quarter}))
        for quarter in QUARTER_MONTHS
    }
    return {'year': year, 'quarterly_stats': quarterly_stats}
