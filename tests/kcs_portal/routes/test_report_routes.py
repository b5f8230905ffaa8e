from datetime import date

import pytest
from fastapi import HTTPException

from kcs_portal.models.evaluation import Evaluation
from kcs_portal.reporting import EvaluationFilters
from kcs_portal.routes.report_routes import get_report_engineers, get_report_evaluations, report_filters


def _add_evaluation(db, engineer, coach, evaluation_date: date) -> Evaluation:
    evaluation = Evaluation(
        engineer_id=engineer.id,
        coach_user_id=coach.id,
        evaluation_date=evaluation_date,
        created_by=coach.id,
    )
    db.add(evaluation)
    db.commit()
    return evaluation


@pytest.fixture
def team(db, make_user, make_engineer):
    coach = make_user(name='Casey Coach', is_coach=True)
    other_coach = make_user(name='Olive Coach', is_coach=True)
    lead = make_user(name='Lee Lead', is_lead=True)
    led = make_engineer('Avery', lead=lead, coach=coach)
    unled = make_engineer('Blake', coach=other_coach)
    _add_evaluation(db, led, coach, date(2026, 2, 3))
    _add_evaluation(db, led, coach, date(2026, 5, 3))
    _add_evaluation(db, unled, other_coach, date(2026, 3, 9))
    return {'coach': coach, 'other_coach': other_coach, 'lead': lead, 'led': led, 'unled': unled}


def test_report_filters_merge_id_lists_with_date_filters() -> None:
    filters = report_filters(
        engineer_id='9',
        engineer_ids='(1, 2)',
        coach_user_id=None,
        lead_user_id='4',
        base_filters=EvaluationFilters(years=[2026], quarter='Q1'),
    )

    assert filters.engineer_ids == [1, 2]
    assert filters.lead_user_ids == [4]
    assert filters.coach_user_ids == []
    assert filters.quarter == 'Q1'


def test_drill_down_returns_admin_every_evaluation_in_quarter(db, make_user, team) -> None:
    admin = make_user(is_admin=True)

    result = get_report_evaluations(filters=EvaluationFilters(years=[2026], quarter='Q1'), db=db, current_user=admin)

    assert [evaluation.engineer_name for evaluation in result['evaluations']] == ['Blake', 'Avery']
    assert result['filters'].quarter == 'Q1'


def test_drill_down_scopes_coaches_to_their_own_evaluations(db, team) -> None:
    result = get_report_evaluations(filters=EvaluationFilters(), db=db, current_user=team['coach'])

    assert {evaluation.coach_user_id for evaluation in result['evaluations']} == {team['coach'].id}
    assert result['filters'].coach_user_ids == [team['coach'].id]


def test_drill_down_scopes_leads_to_their_engineers(db, team) -> None:
    filters = EvaluationFilters(engineer_ids=[team['led'].id, team['unled'].id], quarter='Q2')

    result = get_report_evaluations(filters=filters, db=db, current_user=team['lead'])

    assert [evaluation.evaluation_date for evaluation in result['evaluations']] == [date(2026, 5, 3)]


def test_drill_down_rejects_users_without_reporting_role(db, make_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_report_evaluations(filters=EvaluationFilters(), db=db, current_user=make_user(is_manager=True))

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail == 'Insufficient permissions'


def test_report_engineers_lists_active_engineers_for_coaches(db, make_engineer, team) -> None:
    make_engineer('Retired Rory', is_active=False)

    result = get_report_engineers(db=db, current_user=team['coach'])

    assert [engineer.name for engineer in result['engineers']] == ['Avery', 'Blake']


def test_report_engineers_rejects_managers(db, make_user) -> None:
    with pytest.raises(HTTPException) as exception_info:
        get_report_engineers(db=db, current_user=make_user(is_manager=True))

    assert exception_info.value.status_code == 403
