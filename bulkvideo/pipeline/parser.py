"""
Input Parser — tabular rows (CSV text or a Google Sheet) → canonical JobSpecs.

Pure: the same table always yields the same specs and warnings. Hard errors
(missing header, unknown provider, bad numbers) fail the whole import with the
offending row number; soft problems (blank rows, bad format tokens) become
warnings and the row is kept or skipped.
"""

import io
import csv
import re
import logging
from typing import Optional
from urllib.parse import parse_qs, urlparse

import httpx

from ..errors import InputValidationError, InvalidProviderError
from ..provider_factory import parse_provider
from .models import ColumnMapping, JobSpec, ParseResult

logger = logging.getLogger(__name__)

FORMAT_TOKEN = re.compile(r"^(\d+)[xX](\d+)$")
SHEET_ID = re.compile(r"/spreadsheets/d/([A-Za-z0-9_-]+)")
SHEET_TIMEOUT = 30


def _resolve_columns(header: list[str], mapping: ColumnMapping) -> dict[str, Optional[int]]:
    positions = {cell.strip().lower(): i for i, cell in reversed(list(enumerate(header)))}
    return {
        field: positions.get(name.strip().lower())
        for field, name in mapping.model_dump().items()
    }


def _cell(row: list[str], index: Optional[int]) -> str:
    if index is None or index >= len(row):
        return ""
    return (row[index] or "").strip()


def _positive_int(value: str, field: str, row_index: int) -> Optional[int]:
    if not value:
        return None
    try:
        number = int(value)
    except ValueError:
        number = 0
    if number <= 0:
        raise InputValidationError(f"Row {row_index}: {field} must be a positive integer, got {value!r}")
    return number


def parse_formats(value: str, row_index: int, warnings: list[str]) -> list[str]:
    """'1080x1920, 1920X1080' → ['1080x1920', '1920x1080']; bad tokens become warnings."""
    formats = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        match = FORMAT_TOKEN.match(token)
        if not match:
            warnings.append(f"Row {row_index}: ignoring invalid format {token!r}")
            continue
        fmt = f"{int(match.group(1))}x{int(match.group(2))}"
        if fmt not in formats:
            formats.append(fmt)
    return formats


def parse_table(rows: list[list[str]], mapping: Optional[ColumnMapping] = None) -> ParseResult:
    """
    Parse a header + data table into job specs.

    Args:
        rows:    2-D list of string cells; the first row is the header.
        mapping: Field → header name (case-insensitive). Defaults to ColumnMapping().

    Returns:
        ParseResult with one JobSpec per non-blank data row.

    Raises:
        InputValidationError: empty table, unresolved text column, no data rows,
            or an invalid provider / duration / scene_count on any row.
    """
    mapping = mapping or ColumnMapping()
    if not rows or not any(cell.strip() for cell in rows[0]):
        raise InputValidationError("Input table is empty or has no header row")

    columns = _resolve_columns(rows[0], mapping)
    if columns["text_content"] is None:
        raise InputValidationError(f"Text column {mapping.text_content!r} not found in header")

    data = rows[1:]
    if not data:
        raise InputValidationError("Input table has no data rows")

    specs: list[JobSpec] = []
    warnings: list[str] = []

    for row_index, row in enumerate(data, start=1):
        text = _cell(row, columns["text_content"])
        if not text:
            if any((cell or "").strip() for cell in row):
                warnings.append(f"Row {row_index}: empty text content, row skipped")
            continue

        provider = None
        provider_value = _cell(row, columns["animation_provider"])
        if provider_value:
            try:
                provider = parse_provider(provider_value)
            except InvalidProviderError as e:
                raise InvalidProviderError(f"Row {row_index}: {e}") from None

        specs.append(JobSpec(
            row_index=row_index,
            text_content=text,
            product_image_url=_cell(row, columns["product_image"]) or None,
            image_style=_cell(row, columns["image_style"]) or None,
            video_formats=parse_formats(_cell(row, columns["video_formats"]), row_index, warnings),
            animation_provider=provider,
            duration=_positive_int(_cell(row, columns["duration"]), "duration", row_index),
            scene_count=_positive_int(_cell(row, columns["scene_count"]), "scene_count", row_index),
        ))

    if not specs:
        raise InputValidationError("Input table has no data rows")

    for warning in warnings:
        logger.warning(f"Import: {warning}")
    return ParseResult(specs=specs, warnings=warnings)


def read_csv_text(text: str) -> list[list[str]]:
    """CSV text → rows. Standard quoting; a leading BOM and blank lines are ignored."""
    if text.startswith("\ufeff"):
        text = text[1:]
    return [row for row in csv.reader(io.StringIO(text)) if row]


def sheet_csv_url(sheet_url: str) -> str:
    """
    https://docs.google.com/spreadsheets/d/<id>/edit#gid=123
      → https://docs.google.com/spreadsheets/d/<id>/export?format=csv&gid=123
    """
    match = SHEET_ID.search(sheet_url or "")
    if not match:
        raise InputValidationError(f"Not a Google Sheets URL: {sheet_url!r}")

    parsed = urlparse(sheet_url)
    gid = parse_qs(parsed.query).get("gid", [None])[0]
    if gid is None and parsed.fragment.startswith("gid="):
        gid = parsed.fragment[4:]

    url = f"https://docs.google.com/spreadsheets/d/{match.group(1)}/export?format=csv"
    return f"{url}&gid={gid}" if gid else url


async def fetch_sheet_rows(sheet_url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> list[list[str]]:
    """Download a (link-shared) sheet as CSV and split it into rows."""
    url = sheet_csv_url(sheet_url)
    async with httpx.AsyncClient(timeout=SHEET_TIMEOUT, follow_redirects=True, transport=transport) as client:
        response = await client.get(url)
    if response.status_code != 200:
        raise InputValidationError(
            f"Could not read sheet (HTTP {response.status_code}); is it shared by link?"
        )
    if "text/html" in response.headers.get("content-type", ""):
        raise InputValidationError("Sheet is not publicly readable")
    logger.info(f"Fetched sheet {url} ({len(response.content)} bytes)")
    return read_csv_text(response.text)
