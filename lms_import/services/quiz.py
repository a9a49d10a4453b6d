from __future__ import annotations

import csv
import io
import json
import re
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from jsonschema import Draft7Validator
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from lms_import.core.errors import TaskExecutionError

_SCHEMAS_CACHE: dict[str, Draft7Validator] = {}

_QUESTION_START = re.compile(r"^(\d+\s*[.)]|\d+\s+|quest[aã]o\s+\d+\s*[.:)-]?|q\d+\s*[.:)-]?)\s*", re.IGNORECASE)
_OPTION_START = re.compile(r"^(\(([a-e])\)|([a-e])\s*[.)])\s*", re.IGNORECASE)
_ANSWER_LINE = re.compile(r"^(resposta|gabarito|answer)\s*:\s*(.+)$", re.IGNORECASE)
_CORRECT_MARKERS = re.compile(r"\*|✓|\((correta|correct)\)", re.IGNORECASE)
_TRUE_FALSE_HINTS = ("verdadeiro", "falso", "v ou f", "true or false")
_TRUE_WORDS = {"v", "verdadeiro", "true", "t"}
_FALSE_WORDS = {"f", "falso", "false"}
_OPTION_LETTERS = "abcde"


def _load_schema(name: str) -> Draft7Validator:
    if name in _SCHEMAS_CACHE:
        return _SCHEMAS_CACHE[name]

    schema_path = Path(__file__).resolve().parent.parent / "schemas" / "json" / f"{name}.json"
    if not schema_path.exists():
        raise RuntimeError(f"Schema '{name}' not found at {schema_path}")
    with schema_path.open("r", encoding="utf-8") as fh:
        schema_data = json.load(fh)
    validator = Draft7Validator(schema_data)
    _SCHEMAS_CACHE[name] = validator
    return validator


def _validate_json(data: dict, schema_name: str) -> list[str]:
    validator = _load_schema(schema_name)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    return [f"{'.'.join(map(str, error.path)) or '<root>'}: {error.message}" for error in errors]


def _parse_bool(value: str) -> bool | None:
    word = value.strip().lower().rstrip(".")
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    return None


def _parse_choice(value: str, options: list[str]) -> int | None:
    answer = value.strip().lower().strip("().")
    if not answer:
        return None
    if len(answer) == 1 and answer in _OPTION_LETTERS:
        return _OPTION_LETTERS.index(answer)
    if answer.isdigit():
        return int(answer) - 1
    lowered = [option.lower() for option in options]
    if answer in lowered:
        return lowered.index(answer)
    return None


def parse_quiz_text(content: str) -> list[dict[str, Any]]:
    """Parse numbered questions with lettered options from plain text.

    Options flagged with ``*``, ``✓`` or ``(correta)`` are the correct
    answer. Questions mentioning true/false take their answer from a
    ``Resposta:``/``Gabarito:`` line.
    """

    questions: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        start = _QUESTION_START.match(line)
        if start and not _OPTION_START.match(line):
            if current and current["question"]:
                questions.append(current)
            lowered = line.lower()
            is_true_false = any(hint in lowered for hint in _TRUE_FALSE_HINTS)
            current = {
                "order": len(questions) + 1,
                "question": line[start.end():].strip(),
                "type": "true_false" if is_true_false else "multiple_choice",
                "options": [],
                "correct_answer": None,
                "points": 1,
            }
            continue

        if current is None:
            continue

        answer = _ANSWER_LINE.match(line)
        if answer:
            if current["type"] == "true_false":
                current["correct_answer"] = _parse_bool(answer.group(2))
            else:
                current["correct_answer"] = _parse_choice(answer.group(2), current["options"])
            continue

        option = _OPTION_START.match(line)
        if option and current["type"] == "multiple_choice":
            text = line[option.end():]
            if _CORRECT_MARKERS.search(text):
                current["correct_answer"] = len(current["options"])
            current["options"].append(_CORRECT_MARKERS.sub("", text).strip())

    if current and current["question"]:
        questions.append(current)
    return questions


def _csv_options(row: dict[str, str]) -> list[str]:
    if row.get("options"):
        return [part.strip() for part in row["options"].split("|") if part.strip()]
    options = []
    for letter in _OPTION_LETTERS:
        value = (row.get(f"option_{letter}") or "").strip()
        if value:
            options.append(value)
    return options


def _questions_from_rows(header: Iterable[Any], rows: Iterable[Iterable[Any]]) -> list[dict[str, Any]]:
    columns = [_cell_text(name).lower() for name in header]
    if "question" not in columns:
        raise TaskExecutionError("Quiz sheet has no 'question' column")

    questions: list[dict[str, Any]] = []
    for values in rows:
        row = {column: _cell_text(value) for column, value in zip(columns, values) if column}
        if not row.get("question"):
            continue
        options = _csv_options(row)
        qtype = row.get("type") or ("multiple_choice" if options else "true_false")
        qtype = qtype.lower().replace("-", "_").replace(" ", "_")
        answer_text = row.get("answer", "")
        if qtype == "true_false":
            answer: int | bool | None = _parse_bool(answer_text) if answer_text else None
        else:
            answer = _parse_choice(answer_text, options)
        points = row.get("points") or "1"
        questions.append(
            {
                "order": len(questions) + 1,
                "question": row["question"],
                "type": qtype,
                "options": options,
                "correct_answer": answer,
                "points": int(points) if points.isdigit() else points,
            }
        )
    return questions


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def parse_quiz_csv(content: str) -> list[dict[str, Any]]:
    """Parse a quiz sheet exported as CSV.

    Recognised columns: ``question``, ``type``, ``options`` (``|``-separated)
    or ``option_a`` .. ``option_e``, ``answer`` and ``points``.
    """

    reader = csv.reader(io.StringIO(content))
    header = next(reader, None)
    if header is None:
        raise TaskExecutionError("Quiz sheet has no 'question' column")
    return _questions_from_rows(header, reader)


def parse_quiz_workbook(data: bytes) -> list[dict[str, Any]]:
    """Parse the first worksheet of an ``.xlsx`` quiz; same columns as the CSV form."""

    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
        raise TaskExecutionError(f"Quiz workbook cannot be read: {exc}") from exc
    try:
        rows = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            raise TaskExecutionError("Quiz sheet has no 'question' column")
        return _questions_from_rows(header, rows)
    finally:
        workbook.close()


def validate_questions(questions: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    questions = list(questions)
    if not questions:
        raise TaskExecutionError("No questions found in quiz file")
    problems: list[str] = []
    for question in questions:
        errors = _validate_json(question, "question.schema")
        if errors:
            problems.append(f"question {question.get('order')}: {'; '.join(errors)}")
    if problems:
        raise TaskExecutionError("Malformed quiz: " + " | ".join(problems))
    return questions


def parse_quiz(content: str, *, is_sheet: bool) -> list[dict[str, Any]]:
    parsed = parse_quiz_csv(content) if is_sheet else parse_quiz_text(content)
    return validate_questions(parsed)


XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIME = "application/vnd.ms-excel"


def parse_quiz_file(data: bytes, *, filename: str, mime_type: str) -> list[dict[str, Any]]:
    """Pick the parser for a fetched quiz file by mime type, falling back to the extension."""

    suffix = PurePosixPath(filename).suffix.lower()
    if mime_type == XLSX_MIME or suffix == ".xlsx":
        return validate_questions(parse_quiz_workbook(data))
    if mime_type == XLS_MIME or suffix == ".xls":
        raise TaskExecutionError(f"Legacy Excel quiz '{filename}' is not supported; save it as .xlsx")
    content = data.decode("utf-8-sig", errors="replace")
    return parse_quiz(content, is_sheet=mime_type == "text/csv" or suffix == ".csv")
