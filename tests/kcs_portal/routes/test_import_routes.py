from datetime import date

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from kcs_portal.main import create_app
from kcs_portal.models.engineer import CoachAssignment, Engineer
from kcs_portal.models.evaluation import Evaluation
from kcs_portal.routes.import_routes import (
    build_preview,
    case_field_for,
    evaluation_date_for,
    import_role_for,
    import_workbook,
    parse_coach_selections,
)
from kcs_portal.workbook import parse_workbook

XLSX = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


@pytest.fixture
def avery_workbook(build_workbook, coaching_sheet):
    def factory(coach_name: str | None = 'Casey Coach') -> bytes:
        return build_workbook({
            'Avery': coaching_sheet('Avery', coach_name, {
                'Q1': [
                    [None, 1001, 'Yes', 'Y', 'no', None, None, None, 'true', 'Jan', 'first note'],
                    [None, 1002, None, None, None, None, None, None, None, 'Jan', None],
                    [None, 1003, None, None, None, 'yes', None, 'yes', None, 'February', None],
                ],
                'Q2': [
                    [None, 2001, None, None, None, None, 'y', None, None, 'Apr', None],
                ],
            }),
        })

    return factory


@pytest.fixture
def casey(make_user):
    return make_user(name='Casey Coach', is_coach=True)


def _preview(db, content: bytes, user, role):
    return build_preview(db, parse_workbook(content), 'coaching.xlsx', user, role)


def _evaluations_for(db, name: str) -> list[Evaluation]:
    engineer = db.query(Engineer).filter(Engineer.name == name).one()
    return (
        db.query(Evaluation)
        .filter(Evaluation.engineer_id == engineer.id, Evaluation.deleted_at.is_(None))
        .order_by(Evaluation.evaluation_date.asc())
        .all()
    )


@pytest.mark.parametrize(
    ('header', 'field'),
    [
        ('KB Potential', 'kb_potential'),
        ('Article Linked', 'article_linked'),
        ('Article Improved', 'article_improved'),
        ('Improvement Opportunity', 'improvement_opportunity'),
        ('Article Created', 'article_created'),
        ('Create Opportunity', 'create_opportunity'),
        ('Relevant Link?', 'relevant_link'),
        ('Comments', None),
    ],
)
def test_case_field_for_maps_sheet_headers(header: str, field: str | None) -> None:
    assert case_field_for(header) == field


def test_evaluation_date_for_uses_first_of_month() -> None:
    assert evaluation_date_for('March', 2026) == date(2026, 3, 1)
    assert evaluation_date_for('dec', 2025) == date(2025, 12, 1)
    assert evaluation_date_for('Someday', 2026) == date(2026, 1, 1)
    assert evaluation_date_for(None, 2026) == date(2026, 1, 1)


def test_parse_coach_selections() -> None:
    assert parse_coach_selections(None) is None
    assert parse_coach_selections('{"Avery": 5, "Blake": -2}') == {'Avery': 5, 'Blake': -2}

    for raw in ('not json', '[1, 2]', '{"Avery": -3}', '{"Avery": "5"}'):
        with pytest.raises(HTTPException) as exception_info:
            parse_coach_selections(raw)
        assert exception_info.value.detail == 'Invalid coach_selections format'


def test_import_role_depends_on_user_roles(make_user) -> None:
    assert import_role_for(make_user(is_manager=True), None) == 'admin'
    assert import_role_for(make_user(is_admin=True), 'coach') == 'coach'
    assert import_role_for(make_user(is_lead=True), 'admin') == 'lead'
    assert import_role_for(make_user(is_coach=True), 'admin') == 'coach'


def test_preview_summarizes_owned_workbook(db, casey, avery_workbook) -> None:
    preview = _preview(db, avery_workbook(), casey, 'coach')

    assert preview.metadata.coach_name == 'Casey Coach'
    assert preview.metadata.total_cases == 4
    assert preview.metadata.quarters_found == ['Q1', 'Q2']
    assert preview.coach_ownership_warning is None
    assert preview.conflicts == []
    assert preview.missing_coaches == []


def test_preview_blocks_coach_importing_another_coaches_workbook(db, make_user, avery_workbook) -> None:
    olive = make_user(name='Olive Coach', is_coach=True)

    preview = _preview(db, avery_workbook(), olive, 'coach')

    assert preview.coach_ownership_warning.detected_coach == 'Casey Coach'
    assert preview.coach_ownership_warning.importing_user == 'Olive Coach'
    assert preview.coach_ownership_warning.should_block_import is True


def test_import_creates_engineer_assignment_and_monthly_evaluations(db, casey, avery_workbook) -> None:
    preview = _preview(db, avery_workbook(), casey, 'coach')

    result = import_workbook(db, preview, 2026, {}, casey, 'coach')

    assert result.success is True
    assert (result.imported_engineers, result.imported_evaluations, result.imported_cases) == (1, 3, 4)

    evaluations = _evaluations_for(db, 'Avery')
    assert [evaluation.evaluation_date for evaluation in evaluations] == [
        date(2026, 1, 1), date(2026, 2, 1), date(2026, 4, 1),
    ]
    assert {evaluation.coach_user_id for evaluation in evaluations} == {casey.id}

    january_cases = evaluations[0].cases
    assert len(january_cases) == 7
    first = january_cases[0]
    assert (first.case_number, first.case_id, first.notes) == (1, '1001', 'first note')
    assert (first.kb_potential, first.article_linked, first.relevant_link) == (True, True, True)
    assert first.article_improved is False
    assert january_cases[1].case_id == '1002'
    assert january_cases[2].case_id is None

    february_case = evaluations[1].cases[0]
    assert (february_case.improvement_opportunity, february_case.create_opportunity) == (True, True)
    assert evaluations[2].cases[0].article_created is True


def test_coach_import_skips_engineers_coached_by_someone_else(db, casey, make_user, make_engineer, avery_workbook) -> None:
    olive = make_user(name='Olive Coach', is_coach=True)
    make_engineer('Avery', coach=olive)
    preview = _preview(db, avery_workbook(), casey, 'coach')

    result = import_workbook(db, preview, 2026, {}, casey, 'coach')

    assert [(conflict.current_coach, conflict.action) for conflict in preview.conflicts] == [('Olive Coach', 'skip')]
    assert result.skipped_engineers == ['Avery']
    assert result.imported_evaluations == 0
    assert _evaluations_for(db, 'Avery') == []


def test_admin_import_can_keep_current_coach(db, casey, make_user, make_engineer, avery_workbook) -> None:
    admin = make_user(is_admin=True)
    olive = make_user(name='Olive Coach', is_coach=True)
    make_engineer('Avery', coach=olive)
    preview = _preview(db, avery_workbook(), admin, 'admin')

    result = import_workbook(db, preview, 2026, {'Avery': -1}, admin, 'admin')

    assert [conflict.action for conflict in preview.conflicts] == ['manual']
    assert result.success is True
    assert {evaluation.coach_user_id for evaluation in _evaluations_for(db, 'Avery')} == {olive.id}


def test_admin_import_without_coach_reports_missing_assignment(db, make_user, avery_workbook) -> None:
    admin = make_user(is_admin=True)
    preview = _preview(db, avery_workbook(coach_name=None), admin, 'admin')

    result = import_workbook(db, preview, 2026, {}, admin, 'admin')

    assert [missing.suggested_action for missing in preview.missing_coaches] == ['manual_select']
    assert result.success is False
    assert result.imported_engineers == 1
    assert result.errors == ['Avery: No active coach assignment - please assign a coach first'] * 2


def test_admin_selection_assigns_chosen_coach(db, casey, make_user, avery_workbook) -> None:
    admin = make_user(is_admin=True)
    preview = _preview(db, avery_workbook(coach_name=None), admin, 'admin')

    result = import_workbook(db, preview, 2026, {'Avery': casey.id}, admin, 'admin')

    engineer = db.query(Engineer).filter(Engineer.name == 'Avery').one()
    assignment = db.query(CoachAssignment).filter(CoachAssignment.engineer_id == engineer.id).one()
    assert result.success is True
    assert assignment.coach_user_id == casey.id
    assert assignment.start_date == date.today()


def test_reimporting_same_months_reports_duplicates(db, casey, avery_workbook) -> None:
    import_workbook(db, _preview(db, avery_workbook(), casey, 'coach'), 2026, {}, casey, 'coach')

    result = import_workbook(db, _preview(db, avery_workbook(), casey, 'coach'), 2026, {}, casey, 'coach')

    assert result.success is False
    assert result.errors == ['Engineer Avery: Evaluation already exists for this engineer and month']
    assert len(_evaluations_for(db, 'Avery')) == 3


@pytest.fixture
def client(db_manager):
    return TestClient(create_app(db_manager))


def _token(client: TestClient, email: str, name: str, role: str | None) -> str:
    response = client.post(
        '/api/auth/register',
        json={'email': email, 'password': 'password1', 'name': name, 'role': role},
    )
    return response.json()['token']


def test_import_endpoint_previews_then_imports(client: TestClient, avery_workbook) -> None:
    headers = {'Authorization': f"Bearer {_token(client, 'casey@example.com', 'Casey Coach', 'coach')}"}
    upload = {'excel_file': ('coaching.xlsx', avery_workbook(), XLSX)}

    preview = client.post('/api/evaluations/import', data={'year': '2026'}, files=upload, headers=headers)
    committed = client.post(
        '/api/evaluations/import',
        data={'year': '2026', 'coach_selections': '{}'},
        files=upload,
        headers=headers,
    )

    assert preview.status_code == 200
    assert preview.json()['preview']['metadata']['total_cases'] == 4
    assert committed.status_code == 200
    assert committed.json()['success'] is True
    assert committed.json()['message'] == 'Import completed successfully. Imported 3 evaluations with 4 cases.'


def test_import_endpoint_refuses_to_commit_another_coaches_workbook(client: TestClient, avery_workbook) -> None:
    _token(client, 'casey@example.com', 'Casey Coach', 'coach')
    token = _token(client, 'olive@example.com', 'Olive Coach', 'coach')

    response = client.post(
        '/api/evaluations/import',
        data={'year': '2026', 'coach_selections': '{}'},
        files={'excel_file': ('coaching.xlsx', avery_workbook(), XLSX)},
        headers={'Authorization': f'Bearer {token}'},
    )

    assert response.status_code == 400
    assert response.json() == {'error': 'Import blocked: this workbook belongs to coach Casey Coach'}


def test_import_endpoint_rejects_bad_uploads(client: TestClient) -> None:
    headers = {'Authorization': f"Bearer {_token(client, 'casey@example.com', 'Casey Coach', 'coach')}"}

    wrong_type = client.post(
        '/api/evaluations/import',
        data={'year': '2026'},
        files={'excel_file': ('notes.txt', b'hello', 'text/plain')},
        headers=headers,
    )
    broken = client.post(
        '/api/evaluations/import',
        data={'year': '2026'},
        files={'excel_file': ('broken.xlsx', b'not a workbook', XLSX)},
        headers=headers,
    )
    missing = client.post('/api/evaluations/import', data={'year': '2026'}, headers=headers)
    oversized = client.post(
        '/api/evaluations/import',
        data={'year': '2026'},
        files={'excel_file': ('huge.xlsx', b'0' * (2 * 1024 * 1024 + 1), XLSX)},
        headers=headers,
    )

    assert oversized.status_code == 413
    assert wrong_type.status_code == 400
    assert wrong_type.json() == {'error': 'Only .xlsx and .xlsm files are allowed'}
    assert broken.status_code == 400
    assert broken.json()['error'].startswith('Failed to process Excel file')
    assert missing.json() == {'error': 'No Excel file uploaded'}


def test_import_endpoint_requires_portal_role(client: TestClient, avery_workbook) -> None:
    _token(client, 'admin@example.com', 'First Admin', 'lead')
    token = _token(client, 'guest@example.com', 'Guest User', None)

    response = client.post(
        '/api/evaluations/import',
        data={'year': '2026'},
        files={'excel_file': ('coaching.xlsx', avery_workbook(), XLSX)},
        headers={'Authorization': f'Bearer {token}'},
    )

    assert response.status_code == 403
    assert response.json() == {'error': 'Access denied - insufficient permissions to import evaluations'}
