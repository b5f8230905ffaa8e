from datetime import date

import pytest
from sqlalchemy import func

from kcs_portal.models.evaluation import CaseEvaluation, Evaluation
from kcs_portal.reporting import (
    EvaluationFilters,
    generate_stats,
    parse_id_list,
    percentage,
    query_evaluations,
)


def _evaluation(db, engineer, coach, evaluation_date: date, cases: list[dict]) -> Evaluation:
    evaluation = Evaluation(
        engineer_id=engineer.id,
        coach_user_id=coach.id,
        evaluation_date=evaluation_date,
        created_by=coach.id,
    )
    db.add(evaluation)
    db.flush()
    for number, fields in enumerate(cases, start=1):
        db.add(CaseEvaluation(evaluation_id=evaluation.id, case_number=number, **fields))
    db.commit()
    return evaluation


@pytest.mark.parametrize(
    ('values', 'expected'),
    [
        (('3',), [3]),
        (('1,2, 5',), [1, 2, 5]),
        (('(4, 6)',), [4, 6]),
        (('x,7',), [7]),
        ((None, '9'), [9]),
        (('', None), []),
    ],
)
def test_parse_id_list_accepts_comma_lists_and_parentheses(values, expected) -> None:
    assert parse_id_list(*values) == expected


def test_percentage_rounds_half_up_and_guards_zero() -> None:
    assert percentage(1, 8) == 13
    assert percentage(2, 7) == 29
    assert percentage(5, 0) == 0


def test_stats_are_zero_without_evaluations(db) -> None:
    stats = generate_stats(db, EvaluationFilters())

    assert stats.total_evaluations == 0
    assert stats.total_cases == 0
    assert stats.link_rate == 0
    assert stats.average_score == 0


def test_stats_count_flags_and_measure_relevance_against_linked_articles(
    db, make_user, make_engineer
) -> None:
    coach = make_user(is_coach=True)
    engineer = make_engineer('Avery', coach=coach)
    evaluation = _evaluation(
        db,
        engineer,
        coach,
        date(2026, 2, 10),
        [
            {'case_id': 'A', 'article_linked': True, 'relevant_link': True},
            {'case_id': 'B', 'article_linked': True},
            {'kb_potential': True},
            {}, {}, {}, {},
            {'case_id': 'GONE', 'article_linked': True},
        ],
    )
    db.query(CaseEvaluation).filter(CaseEvaluation.case_id == 'GONE').update(
        {'deleted_at': func.current_timestamp()}, synchronize_session=False
    )
    db.commit()

    stats = generate_stats(db, EvaluationFilters(engineer_ids=[engineer.id]))

    assert evaluation.id is not None
    assert stats.total_evaluations == 1
    assert stats.total_cases == 7
    assert stats.evaluated_cases == 2
    assert stats.article_linked_count == 2
    assert stats.relevant_link_count == 1
    assert stats.kb_potential_percentage == 14
    assert stats.link_rate == 29
    assert stats.relevant_link_percentage == 50
    assert stats.average_score == 50


def test_filters_narrow_by_quarter_month_and_lead(db, make_user, make_engineer) -> None:
    coach = make_user(is_coach=True)
    lead = make_user(is_lead=True)
    led = make_engineer('Led Engineer', lead=lead, coach=coach)
    unled = make_engineer('Other Engineer', coach=coach)
    _evaluation(db, led, coach, date(2026, 2, 10), [{}])
    _evaluation(db, led, coach, date(2026, 5, 10), [{}])
    _evaluation(db, unled, coach, date(2026, 2, 12), [{}])

    first_quarter = generate_stats(db, EvaluationFilters(years=[2026], quarter='Q1'))
    by_lead = query_evaluations(db, EvaluationFilters(lead_user_ids=[lead.id]))
    by_month = query_evaluations(db, EvaluationFilters(months=[2]))
    by_range = query_evaluations(db, EvaluationFilters(start_date=date(2026, 5, 1), end_date=date(2026, 5, 31)))

    assert first_quarter.total_evaluations == 2
    assert [evaluation.evaluation_date for evaluation in by_lead] == [date(2026, 5, 10), date(2026, 2, 10)]
    assert sorted(evaluation.engineer_name for evaluation in by_month) == ['Led Engineer', 'Other Engineer']
    assert [evaluation.evaluation_date for evaluation in by_range] == [date(2026, 5, 10)]


def test_soft_deleted_evaluations_are_excluded(db, make_user, make_engineer) -> None:
    coach = make_user(is_coach=True)
    engineer = make_engineer('Avery', coach=coach)
    evaluation = _evaluation(db, engineer, coach, date(2026, 1, 5), [{'case_id': 'A'}])
    evaluation.deleted_at = func.current_timestamp()
    db.commit()

    assert query_evaluations(db) == []
    assert generate_stats(db, EvaluationFilters()).total_cases == 0
