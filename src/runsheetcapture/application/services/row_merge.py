from __future__ import annotations

MIN_REAL_VALUE_LENGTH = 6
PLACEHOLDER_SUFFIXES = (
    ".pdf",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".bmp",
    ".tif",
    ".tiff",
    ".webp",
    ".heic",
    ".doc",
    ".docx",
)
PLACEHOLDER_WORDS = frozenset({"document"})

ANALYSIS_FLAG_FIELD = "Analysis Flag"
EXISTING_DATA_SKIP_REASON = "Skipped - row has existing data"


def is_populated(value: object) -> bool:
    """True when a cell holds real extracted data rather than a blank or a placeholder.

    Filenames such as ``scan_004.pdf`` and the word "document" are written into
    rows by the upload flow before analysis, so they do not count.
    """
    if value is None:
        return False
    text = str(value).strip()
    if len(text) < MIN_REAL_VALUE_LENGTH:
        return False
    lowered = text.lower()
    if lowered in PLACEHOLDER_WORDS:
        return False
    return not lowered.endswith(PLACEHOLDER_SUFFIXES)


def row_has_real_data(row: dict[str, str] | None, columns: list[str]) -> bool:
    if not row or not columns:
        return False
    return all(is_populated(row.get(column)) for column in columns)


def is_blank(value: object) -> bool:
    return value is None or not str(value).strip()


def merge_extracted_fields(
    row: dict[str, str],
    extracted: dict[str, str],
    *,
    fill_empty_only: bool,
) -> dict[str, str]:
    """Apply ``extracted`` onto ``row`` in place and return exactly the fields written."""
    written: dict[str, str] = {}
    for column, value in extracted.items():
        if fill_empty_only and not is_blank(row.get(column)):
            continue
        row[column] = value
        written[column] = value
    return written


def flag_ambiguous_row(row: dict[str, str], instrument_count: int) -> dict[str, str]:
    message = f"Multiple instruments detected ({instrument_count}) - manual split required"
    row[ANALYSIS_FLAG_FIELD] = message
    return {ANALYSIS_FLAG_FIELD: message}


def ensure_row_count(dataset: list[dict[str, str]], row_count: int) -> None:
    while len(dataset) < row_count:
        dataset.append({})
