from datetime import date
from io import BytesIO

import pytest
from openpyxl import Workbook

from kcs_portal.core import config
from kcs_portal.database import ConnectionManager
from kcs_portal.models.engineer import CoachAssignment, Engineer
from kcs_portal.models.evaluation import CaseEvaluation, Evaluation  # noqa: F401
from kcs_portal.models.manager_assignment import ManagerAssignment  # noqa: F401
from kcs_portal.models.user import User


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'BCRYPT_ROUNDS', 4)


@pytest.fixture
def db_manager(tmp_path):
    manager = ConnectionManager(tmp_path / 'portal.db', root_dir=tmp_path, sleep=lambda _seconds: None)
    manager.open()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def db(db_manager):
    session = db_manager.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    created = []

    def factory(name: str = 'Portal User', email: str | None = None, **roles) -> User:
        user = User(
            name=name,
            email=email or f'user{len(created) + 1}@example.com',
            is_admin=roles.get('is_admin', False),
            is_lead=roles.get('is_lead', False),
            is_coach=roles.get('is_coach', False),
            is_manager=roles.get('is_manager', False),
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        created.append(user)
        return user

    return factory


@pytest.fixture
def make_engineer(db):
    def factory(name: str = 'Engineer', lead: User | None = None, coach: User | None = None, is_active: bool = True):
        engineer = Engineer(name=name, lead_user_id=lead.id if lead else None, is_active=is_active)
        db.add(engineer)
        db.flush()
        if coach is not None:
            db.add(CoachAssignment(engineer_id=engineer.id, coach_user_id=coach.id, start_date=date(2026, 1, 1)))
        db.commit()
        db.refresh(engineer)
        return engineer

    return factory


@pytest.fixture
def build_workbook():
    """Serialize ``{sheet title: rows}`` into xlsx bytes after a summary sheet."""
    def factory(sheets: dict[str, list[list]]) -> bytes:
        workbook = Workbook()
        workbook.active.title = 'Summary'
        for title, rows in sheets.items():
            sheet = workbook.create_sheet(title)
            for row in rows:
                sheet.append(row)
        buffer = BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    return factory


@pytest.fixture
def coaching_sheet():
    """Rows of one engineer sheet: names in D1/H1, parameters in C2:I2, cases under quarter markers."""
    def factory(engineer: str | None, coach: str | None, quarters: dict[str, list[list]]) -> list[list]:
        rows = [
            [None, None, 'Engineer', engineer, None, None, 'Coach', coach],
            [
                None, 'Case', 'KB Potential', 'Article Linked', 'Article Improved',
                'Improvement Opportunity', 'Article Created', 'Create Opportunity', 'Relevant Link',
                'Month', 'Notes',
            ],
        ]
        for quarter, case_rows in quarters.items():
            rows.append([quarter])
            rows.extend(case_rows)
        return rows

    return factory
