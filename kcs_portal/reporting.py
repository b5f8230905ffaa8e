"""
Evaluation filtering and aggregate statistics shared by the evaluation,
report and dashboard routes.
"""

import math
from datetime import date
from typing import Literal

from pydantic import BaseModel
from sqlalchemy import and_, case, distinct, func
from sqlalchemy.orm import Query, Session

from kcs_portal.models.engineer import Engineer
from kcs_portal.models.evaluation import CASE_FLAGS, CaseEvaluation, Evaluation
from kcs_portal.schemas import EvaluationStats

QUARTER_MONTHS = {
    'Q1': ('01', '03'),
    'Q2': ('04', '06'),
    'Q3': ('07', '09'),
    'Q4': ('10', '12'),
}


class EvaluationFilters(BaseModel):
    engineer_ids: list[int] = []
    coach_user_ids: list[int] = []
    lead_user_ids: list[int] = []
    start_date: date | None = None
    end_date: date | None = None
    years: list[int] = []
    months: list[int] = []
    quarter: Literal['Q1', 'Q2', 'Q3', 'Q4'] | None = None


def parse_id_list(*values: str | None) -> list[int]:
    """
    Parse query values such as ``"3"``, ``"1,2"`` or ``"(1, 2)"`` into ints.
    The first value that yields any ids wins; unparseable entries are dropped.
    """
    for value in values:
        if not value:
            continue
        parsed = []
        for chunk in value.replace('(', '').replace(')', '').split(','):
            chunk = chunk.strip()
            if chunk.lstrip('-').isdigit():
                parsed.append(int(chunk))
        if parsed:
            return parsed
    return []


def apply_evaluation_filters(query: Query, filters: EvaluationFilters) -> Query:
    """Narrow a query that already joins Evaluation to Engineer."""
    if filters.engineer_ids:
        query = query.filter(Evaluation.engineer_id.in_(filters.engineer_ids))
    if filters.coach_user_ids:
        query = query.filter(Evaluation.coach_user_id.in_(filters.coach_user_ids))
    if filters.lead_user_ids:
        query = query.filter(Engineer.lead_user_id.in_(filters.lead_user_ids))
    if filters.start_date is not None:
        query = query.filter(Evaluation.evaluation_date >= filters.start_date)
    if filters.end_date is not None:
        query = query.filter(Evaluation.evaluation_date <= filters.end_date)
    if filters.years:
        years = [str(year) for year in filters.years]
        query = query.filter(func.strftime('%Y', Evaluation.evaluation_date).in_(years))
    if filters.months:
        months = [f'{month:02d}' for month in filters.months]
        query = query.filter(func.strftime('%m', Evaluation.evaluation_date).in_(months))
    if filters.quarter is not None:
        first_month, last_month = QUARTER_MONTHS[filters.quarter]
        query = query.filter(
            func.strftime('%m', Evaluation.evaluation_date).between(first_month, last_month)
        )
    return query


def query_evaluations(db: Session, filters: EvaluationFilters | None = None) -> list[Evaluation]:
    query = (
        db.query(Evaluation)
        .join(Engineer, Evaluation.engineer_id == Engineer.id)
        .filter(Evaluation.deleted_at.is_(None))
    )
    query = apply_evaluation_filters(query, filters or EvaluationFilters())
    return query.order_by(Evaluation.evaluation_date.desc(), Engineer.name.asc()).all()


def percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return math.floor(part * 100 / whole + 0.5)


def _flag_count(flag: str):
    column = getattr(CaseEvaluation, flag)
    return func.sum(case((column.is_(True), 1), else_=0)).label(f'{flag}_count')


def generate_stats(db: Session, filters: EvaluationFilters) -> EvaluationStats:
    has_case_id = and_(CaseEvaluation.case_id.isnot(None), CaseEvaluation.case_id != '')
    query = (
        db.query(
            func.count(distinct(Evaluation.id)).label('total_evaluations'),
            func.count(CaseEvaluation.id).label('total_cases'),
            func.count(case((has_case_id, 1))).label('evaluated_cases'),
            *[_flag_count(flag) for flag in CASE_FLAGS],
        )
        .select_from(Evaluation)
        .join(Engineer, Evaluation.engineer_id == Engineer.id)
        .outerjoin(
            CaseEvaluation,
            and_(CaseEvaluation.evaluation_id == Evaluation.id, CaseEvaluation.deleted_at.is_(None)),
        )
        .filter(Evaluation.deleted_at.is_(None))
    )
    row = apply_evaluation_filters(query, filters).one()._mapping

    counts = {key: int(value or 0) for key, value in row.items()}
    total_cases = counts['total_cases']
    linked = counts['article_linked_count']
    relevant = counts['relevant_link_count']

    percentages = {
        f'{flag}_percentage': percentage(counts[f'{flag}_count'], total_cases)
        for flag in CASE_FLAGS
        if flag != 'relevant_link'
    }

    # relevant links are measured against linked articles, not all cases
    return EvaluationStats(
        **counts,
        **percentages,
        relevant_link_percentage=percentage(relevant, linked),
        link_rate=percentage(linked, total_cases),
        average_score=percentage(relevant, linked or 1) if total_cases else 0,
    )
