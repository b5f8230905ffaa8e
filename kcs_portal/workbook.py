"""
Reading coaching workbooks.

A workbook holds a summary sheet followed by one sheet per engineer. Each
engineer sheet names the engineer in D1 and the coach in H1, lists the
scored parameters in C2:I2, and groups case rows under quarter markers
("Q1" .. "Q4") in column A. Case rows carry the case number in column B,
the month in column J and notes in column K.
"""

import logging
import re
from io import BytesIO
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ENGINEER_NAME_COLUMN = 3
COACH_NAME_COLUMN = 7
PARAMETER_COLUMNS = range(2, 9)
CASE_NUMBER_COLUMN = 1
MONTH_COLUMN = 9
NOTES_COLUMN = 10

PLACEHOLDER_SHEET = re.compile(r'Engineer\s+\d+', re.IGNORECASE)
QUARTER_MARKER = re.compile(r'Q[1-4]', re.IGNORECASE)

TRUE_VALUES = {'true', '1', 'yes', 'y'}
FALSE_VALUES = {'false', '0', 'no', 'n'}


class WorkbookError(ValueError):
    """The uploaded file or one of its sheets cannot be read."""


class ParsedCase(BaseModel):
    case_number: int
    quarter: str
    month: str | None = None
    notes: str | None = None
    parameters: dict[str, bool | None] = {}


class ParsedQuarter(BaseModel):
    quarter: str
    cases: list[ParsedCase]


class ParsedEngineer(BaseModel):
    name: str
    coach_name: str | None = None
    evaluations: list[ParsedQuarter] = []


class ParsedWorkbook(BaseModel):
    engineers: list[ParsedEngineer] = []
    errors: list[str] = []


def cell_value(rows: list[tuple], row_index: int, column: int):
    if row_index >= len(rows):
        return None
    row = rows[row_index]
    if column >= len(row):
        return None
    return row[column]


def text_value(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_boolean(value) -> bool | None:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def parse_case_number(value) -> int | None:
    """Whole, non-zero case numbers only; totals rows and labels are skipped."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value or None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not number.is_integer() or number == 0:
        return None
    return int(number)


def find_quarters(rows: list[tuple]) -> list[tuple[str, int, int]]:
    """Return ``(name, first_row, last_row)`` for each quarter block."""
    markers = []
    for index in range(len(rows)):
        label = text_value(cell_value(rows, index, 0))
        if label and QUARTER_MARKER.search(label):
            markers.append((label.upper(), index))

    quarters = []
    for position, (name, start) in enumerate(markers):
        end = markers[position + 1][1] - 1 if position + 1 < len(markers) else len(rows) - 1
        quarters.append((name, start, end))
    return quarters


def parse_sheet(title: str, rows: list[tuple]) -> ParsedEngineer:
    if not any(value is not None for row in rows for value in row):
        raise WorkbookError('Empty sheet')

    headers = []
    for column in PARAMETER_COLUMNS:
        header = text_value(cell_value(rows, 1, column))
        if header:
            headers.append((header, column))

    engineer = ParsedEngineer(
        name=text_value(cell_value(rows, 0, ENGINEER_NAME_COLUMN)) or title,
        coach_name=text_value(cell_value(rows, 0, COACH_NAME_COLUMN)),
    )

    for quarter, start, end in find_quarters(rows):
        cases = []
        for index in range(start, end + 1):
            case_number = parse_case_number(cell_value(rows, index, CASE_NUMBER_COLUMN))
            if case_number is None:
                continue
            cases.append(ParsedCase(
                case_number=case_number,
                quarter=quarter,
                month=text_value(cell_value(rows, index, MONTH_COLUMN)),
                notes=text_value(cell_value(rows, index, NOTES_COLUMN)),
                parameters={header: parse_boolean(cell_value(rows, index, column)) for header, column in headers},
            ))
        if cases:
            engineer.evaluations.append(ParsedQuarter(quarter=quarter, cases=cases))

    return engineer


def parse_workbook(content: bytes) -> ParsedWorkbook:
    try:
        workbook = load_workbook(BytesIO(content), data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
        raise WorkbookError(f'Failed to parse Excel file: {exc}') from exc

    parsed = ParsedWorkbook()
    try:
        # the first sheet is the summary; "Engineer N" sheets are unused templates
        sheets = [sheet for sheet in workbook.worksheets[1:] if not PLACEHOLDER_SHEET.search(sheet.title)]
        logger.info('Processing %s engineer sheets', len(sheets))

        for sheet in sheets:
            try:
                engineer = parse_sheet(sheet.title, list(sheet.iter_rows(values_only=True)))
            except WorkbookError as exc:
                parsed.errors.append(f'Sheet {sheet.title}: {exc}')
                continue
            if engineer.evaluations:
                parsed.engineers.append(engineer)
    finally:
        workbook.close()

    return parsed
