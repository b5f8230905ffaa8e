import calendar
from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from kcs_portal.auth.dependencies import authenticate_request
from kcs_portal.dependencies import get_db
from kcs_portal.models.engineer import Engineer
from kcs_portal.models.user import User
from kcs_portal.reporting import EvaluationFilters, query_evaluations

router = APIRouter(tags=['dashboard'])


def month_bounds(today: date) -> tuple[date, date]:
    last_day = calendar.monthrange(today.year, today.month)[1]
    return today.replace(day=1), today.replace(day=last_day)


def build_overview(db: Session, today: date) -> dict:
    """System-wide counts; every signed-in user sees the same numbers."""
    start_of_month, end_of_month = month_bounds(today)
    this_month = EvaluationFilters(start_date=start_of_month, end_date=end_of_month)

    return {
        'total_evaluations': len(query_evaluations(db)),
        'this_month_evaluations': len(query_evaluations(db, this_month)),
        'total_engineers': db.query(Engineer).filter(Engineer.is_active.is_(True)).count(),
        'total_coaches': db.query(User).filter(User.is_coach.is_(True), User.deleted_at.is_(None)).count(),
        'current_month': today.strftime('%B %Y'),
    }


@router.get('/overview')
def get_overview(db: Session = Depends(get_db), current_user: User = Depends(authenticate_request)):
    return {'overview': build_overview(db, date.today())}
