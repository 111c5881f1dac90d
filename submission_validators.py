"""
Inbound submission validation for the marketing job proxy.
Checks the DM-list CSV shape and the leads JSON payload before anything is
forwarded upstream.
"""

import json
import re
from typing import Any

CANONICAL_HEADER = "userName,userLink,directMessage"
LEGACY_HEADER = "userName,userLink"
ALLOWED_HEADERS = (CANONICAL_HEADER, LEGACY_HEADER)
MAX_TARGETS = 300

_LINE_SPLIT_RE = re.compile(r"\r?\n")
_BOM = "\ufeff"


class SubmissionRejected(ValueError):
    """Validation failure with a stable machine-readable code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def as_payload(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


def _split_csv_lines(csv_text: str) -> list[str]:
    text = csv_text[1:] if csv_text.startswith(_BOM) else csv_text
    return _LINE_SPLIT_RE.split(text)


def validate_dm_csv(csv_text: str) -> int:
    """Validate header and row bounds, returning the number of data rows."""
    lines = _split_csv_lines(csv_text or "")
    header = lines[0].strip()
    if header not in ALLOWED_HEADERS:
        raise SubmissionRejected(
            "INVALID_HEADER",
            f"Invalid header. Expected one of: {' | '.join(ALLOWED_HEADERS)}",
        )
    count = sum(1 for line in lines[1:] if line.strip())
    if count == 0:
        raise SubmissionRejected("EMPTY_ROWS", "No rows found after header.")
    if count > MAX_TARGETS:
        raise SubmissionRejected(
            "TOO_MANY_ROWS",
            f"Too many rows: {count}. Maximum allowed is {MAX_TARGETS}.",
        )
    return count


def expand_legacy_header(csv_text: str) -> str:
    """
    Rewrite a userName,userLink CSV into the three-column form.

    Non-blank rows get an empty trailing directMessage field; blank lines are
    kept as they are. Canonical CSVs are returned untouched.
    """
    lines = _split_csv_lines(csv_text)
    if lines[0].strip() != LEGACY_HEADER:
        return csv_text
    transformed = [CANONICAL_HEADER]
    for line in lines[1:]:
        if not line.strip():
            transformed.append(line)
        else:
            transformed.append(line if line.endswith(",") else f"{line},")
    return "\n".join(transformed)


def prepare_dm_csv(csv_text: str) -> tuple[str, int]:
    """Validate, then expand the legacy header. Returns (body_to_forward, row_count)."""
    count = validate_dm_csv(csv_text)
    return expand_legacy_header(csv_text), count


def parse_leads_payload(raw: str) -> dict[str, Any]:
    """Decode and shape-check a leads request body; the payload itself is returned untouched."""
    try:
        payload = json.loads(raw or "{}")
    except ValueError as exc:
        raise SubmissionRejected("INVALID_JSON", "Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise SubmissionRejected("INVALID_JSON", "Body must be a JSON object.")

    seed_user_names = payload.get("seedUserNames")
    if not isinstance(seed_user_names, list) or not seed_user_names:
        raise SubmissionRejected("INVALID_SEED", "seedUserNames must be a non-empty array of strings.")
    for name in seed_user_names:
        if not isinstance(name, str) or not name.strip():
            raise SubmissionRejected("INVALID_SEED_ITEM", "Each seed user name must be a non-empty string.")

    # Any JSON container passes, as does null; only scalars are refused.
    filters = payload.get("filters")
    if filters is not None and not isinstance(filters, (dict, list)):
        raise SubmissionRejected("INVALID_FILTERS", "filters must be an object if provided.")
    return payload
