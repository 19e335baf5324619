"""Source payload parsing: uploaded sheet bytes -> per-row input records."""

from __future__ import annotations

import csv
import io
import json
import re
from typing import Any, Protocol

from sheet_tasks.engine.errors import SourcePayloadError
from sheet_tasks.engine.models import CHAT_EVALUATION, URL_CLEANING

_CITATION_SPLIT_RE = re.compile(r"[\n;|]+")

_COLUMN_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    CHAT_EVALUATION: {
        "question": ("question", "prompt", "query"),
        "golden_answer": ("golden_answer", "expected_answer", "answer"),
        "golden_citations": ("golden_citations", "expected_citations", "citations"),
    },
    URL_CLEANING: {
        "url": ("url", "link", "source_url"),
        "parsed_title": ("parsed_title", "title"),
    },
}


class SheetParser(Protocol):
    """Protocol implemented by source payload parsers."""

    def parse(
        self,
        payload: bytes,
        *,
        task_type: str,
        file_mime_type: str | None = None,
        sheet_name: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return row records in source order."""


class DefaultSheetParser:
    """CSV and JSON parser with per-task-type column mapping.

    JSON payloads are either a list of objects, an object with a `rows` list, or
    an object keyed by sheet name. Anything else is treated as UTF-8 CSV with a
    header row.
    """

    def parse(
        self,
        payload: bytes,
        *,
        task_type: str,
        file_mime_type: str | None = None,
        sheet_name: str | None = None,
    ) -> list[dict[str, Any]]:
        try:
            text = payload.decode("utf-8-sig")
        except UnicodeDecodeError as error:
            raise SourcePayloadError(f"Source payload is not valid UTF-8: {error}") from error

        if _looks_like_json(text, file_mime_type):
            raw_records = _parse_json(text, sheet_name=sheet_name)
        else:
            raw_records = _parse_csv(text)

        records: list[dict[str, Any]] = []
        for raw in raw_records:
            normalized = {_normalize_column(key): value for key, value in raw.items() if key}
            if all(_is_blank(value) for value in normalized.values()):
                continue
            records.append(_map_columns(normalized, task_type=task_type))
        return records


def _looks_like_json(text: str, file_mime_type: str | None) -> bool:
    if file_mime_type and "json" in file_mime_type.lower():
        return True
    stripped = text.lstrip()
    return stripped.startswith(("[", "{"))


def _parse_json(text: str, *, sheet_name: str | None) -> list[dict[str, Any]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as error:
        raise SourcePayloadError(f"Invalid JSON source payload: {error}") from error

    if isinstance(data, dict):
        if isinstance(data.get("rows"), list):
            data = data["rows"]
        elif sheet_name is not None and isinstance(data.get(sheet_name), list):
            data = data[sheet_name]
        else:
            raise SourcePayloadError(
                "JSON source payload must be a list of rows, an object with 'rows', "
                "or an object keyed by sheet name.",
            )
    if not isinstance(data, list):
        raise SourcePayloadError("JSON source payload must contain a list of rows.")

    records: list[dict[str, Any]] = []
    for index, item in enumerate(data, start=1):
        if not isinstance(item, dict):
            raise SourcePayloadError(f"JSON row {index} must be an object.")
        records.append({str(key): value for key, value in item.items()})
    return records


def _parse_csv(text: str) -> list[dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(text))
    try:
        rows = list(reader)
    except csv.Error as error:
        raise SourcePayloadError(f"Invalid CSV source payload: {error}") from error
    if reader.fieldnames is None:
        return []
    return [{key: value for key, value in row.items() if key is not None} for row in rows]


def _normalize_column(name: str) -> str:
    return "_".join(name.strip().lower().split())


def _is_blank(value: Any) -> bool:  # noqa: ANN401
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list):
        return not value
    return False


def _map_columns(record: dict[str, Any], *, task_type: str) -> dict[str, Any]:
    aliases = _COLUMN_ALIASES.get(task_type)
    if aliases is None:
        return record

    mapped: dict[str, Any] = {}
    for field_name, candidates in aliases.items():
        value = next(
            (record[name] for name in candidates if name in record and not _is_blank(record[name])),
            None,
        )
        mapped[field_name] = value

    if task_type == CHAT_EVALUATION:
        mapped["question"] = _as_text(mapped["question"])
        mapped["golden_answer"] = _as_text(mapped["golden_answer"]) or ""
        mapped["golden_citations"] = _as_citations(mapped["golden_citations"])
    else:
        mapped["url"] = _as_text(mapped["url"]) or ""
        mapped["parsed_title"] = _as_text(mapped["parsed_title"])
    return mapped


def _as_text(value: Any) -> str | None:  # noqa: ANN401
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_citations(value: Any) -> list[str]:  # noqa: ANN401
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in _CITATION_SPLIT_RE.split(str(value)) if part.strip()]
