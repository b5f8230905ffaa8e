import json
import logging
from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from kcs_portal.auth.dependencies import authenticate_request
from kcs_portal.dependencies import get_db
from kcs_portal.models.engineer import CoachAssignment, Engineer
from kcs_portal.models.evaluation import CaseEvaluation
from kcs_portal.models.user import User
from kcs_portal.routes.evaluation_routes import next_case_number, open_evaluation
from kcs_portal.workbook import ParsedEngineer, ParsedQuarter, ParsedWorkbook, WorkbookError, parse_workbook

logger = logging.getLogger(__name__)

router = APIRouter(tags=['evaluations'])

ImportRole = Literal['coach', 'lead', 'admin']

MAX_UPLOAD_BYTES = 2 * 1024 * 1024
ALLOWED_UPLOAD_EXTENSIONS = ('.xlsx', '.xlsm')

# coach_selections values besides a coach user id
SKIP_SELECTION = -1
REASSIGN_SELECTION = -2

MONTHS = {
    'jan': 1, 'january': 1,
    'feb': 2, 'february': 2,
    'mar': 3, 'march': 3,
    'apr': 4, 'april': 4,
    'may': 5,
    'jun': 6, 'june': 6,
    'jul': 7, 'july': 7,
    'aug': 8, 'august': 8,
    'sep': 9, 'september': 9,
    'oct': 10, 'october': 10,
    'nov': 11, 'november': 11,
    'dec': 12, 'december': 12,
}

# checked in order, so specific headers win over the generic keywords after them
PARAMETER_KEYWORDS = (
    ('createopportunity', 'create_opportunity'),
    ('improvementopportunity', 'improvement_opportunity'),
    ('opportunity', 'improvement_opportunity'),
    ('potential', 'kb_potential'),
    ('relevant', 'relevant_link'),
    ('linked', 'article_linked'),
    ('improved', 'article_improved'),
    ('created', 'article_created'),
)


class ImportConflict(BaseModel):
    engineer_name: str
    current_coach: str
    excel_coach: str | None = None
    action: Literal['skip', 'reassign', 'manual']


class MissingCoach(BaseModel):
    engineer_name: str
    excel_coach_name: str | None = None
    suggested_action: Literal['assign_to_importer', 'manual_select']


class CoachOwnershipWarning(BaseModel):
    detected_coach: str
    importing_user: str
    should_block_import: bool = True


class ImportMetadata(BaseModel):
    coach_name: str | None = None
    total_cases: int = 0
    quarters_found: list[str] = []
    file_name: str


class ImportPreview(BaseModel):
    engineers: list[ParsedEngineer] = []
    conflicts: list[ImportConflict] = []
    metadata: ImportMetadata
    errors: list[str] = []
    missing_coaches: list[MissingCoach] = []
    coach_ownership_warning: CoachOwnershipWarning | None = None


class ImportResult(BaseModel):
    success: bool = False
    imported_engineers: int = 0
    imported_evaluations: int = 0
    imported_cases: int = 0
    skipped_engineers: list[str] = []
    errors: list[str] = []


def can_import(user: User) -> bool:
    return user.is_admin or user.is_coach or user.is_lead or user.is_manager


def import_role_for(user: User, requested: ImportRole | None) -> ImportRole:
    if user.is_admin or user.is_manager:
        return requested or 'admin'
    if user.is_lead:
        return 'lead'
    return 'coach'


def parse_coach_selections(raw: str | None) -> dict[str, int] | None:
    """Engineer name to coach user id, or -1 to skip and -2 to follow the workbook's coach."""
    if raw is None:
        return None
    try:
        selections = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid coach_selections format') from exc

    valid = isinstance(selections, dict) and all(
        isinstance(value, int) and not isinstance(value, bool) and value >= REASSIGN_SELECTION
        for value in selections.values()
    )
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid coach_selections format')
    return selections


def case_field_for(header: str) -> str | None:
    normalized = ''.join(character for character in header.lower() if 'a' <= character <= 'z')
    for keyword, field in PARAMETER_KEYWORDS:
        if keyword in normalized:
            return field
    return None


def evaluation_date_for(month: str | None, year: int) -> date:
    if month is None:
        return date(year, 1, 1)
    return date(year, MONTHS.get(month.lower(), 1), 1)


def find_coach_by_name(db: Session, name: str) -> User | None:
    return (
        db.query(User)
        .filter(User.is_coach.is_(True), User.deleted_at.is_(None), func.lower(User.name) == name.lower())
        .order_by(User.id.asc())
        .first()
    )


def find_engineer_by_name(db: Session, name: str) -> Engineer | None:
    return (
        db.query(Engineer)
        .filter(func.lower(Engineer.name) == name.lower())
        .order_by(Engineer.id.asc())
        .first()
    )


def current_assignment(db: Session, engineer_id: int) -> CoachAssignment | None:
    return (
        db.query(CoachAssignment)
        .filter(CoachAssignment.engineer_id == engineer_id, CoachAssignment.is_active.is_(True))
        .order_by(CoachAssignment.start_date.desc(), CoachAssignment.id.desc())
        .first()
    )


def fallback_coach_id(db: Session, user: User) -> int | None:
    if user.is_coach:
        return user.id
    if user.is_admin or user.is_lead:
        coach = (
            db.query(User)
            .filter(User.is_coach.is_(True), User.deleted_at.is_(None))
            .order_by(User.id.asc())
            .first()
        )
        if coach is not None:
            logger.warning('Assigning first available coach %s for import by %s', coach.name, user.name)
            return coach.id
    return None


def detect_conflicts(db: Session, preview: ImportPreview, user: User, role: ImportRole) -> None:
    detected_coach = preview.metadata.coach_name
    if role == 'coach' and detected_coach and detected_coach.strip().lower() != user.name.strip().lower():
        logger.warning('Import by %s blocked: workbook belongs to coach %s', user.name, detected_coach)
        preview.coach_ownership_warning = CoachOwnershipWarning(
            detected_coach=detected_coach,
            importing_user=user.name,
        )
        return

    for parsed in preview.engineers:
        existing = find_engineer_by_name(db, parsed.name)

        if not parsed.coach_name:
            preview.missing_coaches.append(MissingCoach(
                engineer_name=parsed.name,
                suggested_action='manual_select' if role == 'admin' else 'assign_to_importer',
            ))
            continue

        excel_coach = find_coach_by_name(db, parsed.coach_name)
        if excel_coach is None:
            preview.missing_coaches.append(MissingCoach(
                engineer_name=parsed.name,
                excel_coach_name=parsed.coach_name,
                suggested_action='manual_select' if role == 'admin' else 'assign_to_importer',
            ))
        elif existing is not None:
            assignment = current_assignment(db, existing.id)
            if assignment is not None and assignment.coach_user_id != excel_coach.id:
                preview.conflicts.append(ImportConflict(
                    engineer_name=parsed.name,
                    current_coach=assignment.coach_name or 'Unknown',
                    excel_coach=parsed.coach_name,
                    action='manual' if role == 'admin' else 'skip',
                ))

    logger.info(
        'Import conflict detection: %s missing coaches, %s conflicts',
        len(preview.missing_coaches), len(preview.conflicts),
    )


def build_preview(db: Session, workbook: ParsedWorkbook, file_name: str, user: User, role: ImportRole) -> ImportPreview:
    engineers = workbook.engineers
    metadata = ImportMetadata(
        coach_name=next((engineer.coach_name for engineer in engineers if engineer.coach_name), None),
        total_cases=sum(len(quarter.cases) for engineer in engineers for quarter in engineer.evaluations),
        quarters_found=sorted({quarter.quarter for engineer in engineers for quarter in engineer.evaluations}),
        file_name=file_name,
    )
    preview = ImportPreview(engineers=engineers, metadata=metadata, errors=list(workbook.errors))
    detect_conflicts(db, preview, user, role)
    return preview


def assign_imported_coach(
    db: Session,
    parsed: ParsedEngineer,
    engineer: Engineer,
    selections: dict[str, int],
    user: User,
    role: ImportRole,
) -> None:
    selection = selections.get(parsed.name)
    if selection == SKIP_SELECTION:
        logger.info('Keeping current coach for %s', parsed.name)
        return

    has_coach = current_assignment(db, engineer.id) is not None
    target_id = None

    if selection is not None and selection > 0:
        target_id = selection
    elif selection == REASSIGN_SELECTION and parsed.coach_name:
        excel_coach = find_coach_by_name(db, parsed.coach_name)
        if excel_coach is not None:
            target_id = excel_coach.id
        elif role == 'coach':
            target_id = fallback_coach_id(db, user)
    elif not has_coach:
        excel_coach = find_coach_by_name(db, parsed.coach_name) if parsed.coach_name else None
        if excel_coach is not None:
            target_id = excel_coach.id
        elif role == 'coach':
            target_id = fallback_coach_id(db, user)

    if target_id is None:
        logger.info('No coach assignment created for %s', engineer.name)
        return
    if has_coach:
        logger.info('Skipping coach assignment for %s: already has an active coach', engineer.name)
        return

    db.add(CoachAssignment(engineer_id=engineer.id, coach_user_id=target_id, start_date=date.today()))
    db.commit()
    logger.info('Assigned coach %s to engineer %s during import', target_id, engineer.name)


def empty_case_slots(db: Session, evaluation_id: int) -> list[CaseEvaluation]:
    return (
        db.query(CaseEvaluation)
        .filter(
            CaseEvaluation.evaluation_id == evaluation_id,
            or_(CaseEvaluation.case_id.is_(None), CaseEvaluation.case_id == ''),
            CaseEvaluation.deleted_at.is_(None),
        )
        .order_by(CaseEvaluation.case_number.asc())
        .all()
    )


def import_quarter(
    db: Session,
    engineer: Engineer,
    quarter: ParsedQuarter,
    year: int,
    user: User,
    result: ImportResult,
) -> None:
    if current_assignment(db, engineer.id) is None:
        logger.warning('Skipping evaluation import for %s: no active coach', engineer.name)
        result.errors.append(f'{engineer.name}: No active coach assignment - please assign a coach first')
        return

    cases_by_month = {}
    for parsed_case in quarter.cases:
        cases_by_month.setdefault(parsed_case.month, []).append(parsed_case)

    for month, cases in cases_by_month.items():
        evaluation = open_evaluation(db, engineer.id, evaluation_date_for(month, year), user.id)
        result.imported_evaluations += 1

        slots = empty_case_slots(db, evaluation.id)
        for parsed_case in cases:
            fields = {'case_id': str(parsed_case.case_number), 'notes': parsed_case.notes}
            for header, value in parsed_case.parameters.items():
                field = case_field_for(header)
                if field is not None and value:
                    fields[field] = True

            if slots:
                slot = slots.pop(0)
                for field, value in fields.items():
                    setattr(slot, field, value)
            else:
                db.add(CaseEvaluation(
                    evaluation_id=evaluation.id,
                    case_number=next_case_number(db, evaluation.id),
                    **fields,
                ))
                db.flush()
            result.imported_cases += 1

        db.commit()
        logger.info('Imported evaluation %s for %s (%s cases)', evaluation.id, engineer.name, len(cases))


def import_engineer(
    db: Session,
    parsed: ParsedEngineer,
    year: int,
    selections: dict[str, int],
    user: User,
    role: ImportRole,
    result: ImportResult,
) -> None:
    engineer = find_engineer_by_name(db, parsed.name)
    if engineer is None:
        lead_user_id = user.id if role == 'coach' and user.is_lead else None
        engineer = Engineer(name=parsed.name, lead_user_id=lead_user_id)
        db.add(engineer)
        db.commit()
        db.refresh(engineer)
        result.imported_engineers += 1
        logger.info('Created engineer %s (%s) during import', engineer.name, engineer.id)

    assign_imported_coach(db, parsed, engineer, selections, user, role)

    for quarter in parsed.evaluations:
        import_quarter(db, engineer, quarter, year, user, result)


def import_workbook(
    db: Session,
    preview: ImportPreview,
    year: int,
    selections: dict[str, int],
    user: User,
    role: ImportRole,
) -> ImportResult:
    result = ImportResult()
    skipped = {conflict.engineer_name for conflict in preview.conflicts if conflict.action == 'skip'}

    for parsed in preview.engineers:
        if parsed.name in skipped:
            result.skipped_engineers.append(parsed.name)
            continue
        try:
            import_engineer(db, parsed, year, selections, user, role, result)
        except HTTPException as exc:
            db.rollback()
            result.errors.append(f'Engineer {parsed.name}: {exc.detail}')

    result.success = not result.errors
    return result


@router.post('/import')
def import_evaluations(
    excel_file: UploadFile | None = File(default=None),
    year: int = Form(ge=2020, le=2030),
    import_as_role: ImportRole | None = Form(default=None),
    coach_selections: str | None = Form(default=None),
    db: Session = Depends(get_db),
    current_user: User = Depends(authenticate_request),
):
    if not can_import(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Access denied - insufficient permissions to import evaluations',
        )
    if excel_file is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No Excel file uploaded')

    file_name = excel_file.filename or ''
    if not file_name.lower().endswith(ALLOWED_UPLOAD_EXTENSIONS):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Only .xlsx and .xlsm files are allowed')

    content = excel_file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail='Excel file exceeds the 2MB limit')

    selections = parse_coach_selections(coach_selections)
    role = import_role_for(current_user, import_as_role)
    logger.info('Parsing workbook %s for user %s (role: %s)', file_name, current_user.id, role)

    try:
        workbook = parse_workbook(content)
    except WorkbookError as exc:
        logger.error('Excel import error: %s', exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f'Failed to process Excel file: {exc}') from exc

    preview = build_preview(db, workbook, file_name, current_user, role)
    if selections is None:
        return {
            'success': True,
            'preview': preview,
            'message': 'File parsed successfully. Review the data and submit with coach selections to complete import.',
        }

    warning = preview.coach_ownership_warning
    if warning is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Import blocked: this workbook belongs to coach {warning.detected_coach}',
        )

    result = import_workbook(db, preview, year, selections, current_user, role)
    logger.info(
        'User %s imported %s evaluations with %s cases from %s',
        current_user.id, result.imported_evaluations, result.imported_cases, file_name,
    )
    if result.success:
        message = (
            f'Import completed successfully. Imported {result.imported_evaluations} evaluations '
            f'with {result.imported_cases} cases.'
        )
    else:
        message = 'Import completed with errors. Check the error details.'
    return {'success': result.success, 'result': result, 'message': message}
