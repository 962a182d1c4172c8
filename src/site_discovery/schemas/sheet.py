"""Sheet envelope used for every file written under .media/."""

from typing import Any, List

from site_discovery.services.exceptions import SchemaVersionError

SHEET_SCHEMA_VERSION = 1
SHEET_TYPE = "sheet"


def build_single_sheet(data: Any) -> dict:
    """Wrap data in a sheet envelope, a non-list value becomes a single row."""
    rows = data if isinstance(data, list) else [data]
    return {
        "total": len(rows),
        "limit": len(rows),
        "offset": 0,
        "data": rows,
        ":type": SHEET_TYPE,
        "schemaVersion": SHEET_SCHEMA_VERSION,
    }


def parse_sheet(raw: Any) -> List[Any]:
    """
    Extract the rows of a sheet.

    Accepts the envelope, a multi-sheet wrapper with a single "data" sheet,
    or a bare list written by older versions.

    Raises:
        SchemaVersionError: If the file declares a version newer than this reader
    """
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if not isinstance(raw, dict):
        raise SchemaVersionError(f"Unrecognised sheet payload of type {type(raw).__name__}")

    version = raw.get("schemaVersion", SHEET_SCHEMA_VERSION)
    if not isinstance(version, int) or version > SHEET_SCHEMA_VERSION:
        raise SchemaVersionError(
            f"Unsupported sheet schema version {version!r}, expected <= {SHEET_SCHEMA_VERSION}"
        )

    data = raw.get("data", [])
    if isinstance(data, dict):
        data = data.get("data", [])
    return data if isinstance(data, list) else [data]


def parse_single_row(raw: Any) -> Any:
    """First row of a single-row sheet, None when the sheet is empty."""
    rows = parse_sheet(raw)
    return rows[0] if rows else None
