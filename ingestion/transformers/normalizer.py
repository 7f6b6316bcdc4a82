"""
Transform raw source records into typed destination values.

Every record is normalized (keys lowercased, values stringified), then each
planned column is converted by its type class and the row is validated
against the target table's required columns.
"""

import json
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging

from core.exceptions import RowRejectedError
from ingestion.tables import TableSpec
from ingestion.transformers.column_planner import ColumnPlanItem, normalize_header

logger = logging.getLogger(__name__)

Value = Union[str, int, float, None]

INTEGER_COLUMNS = frozenset({"ordrenr", "linjenr", "firmaid"})
DECIMAL_COLUMNS = frozenset({"sum", "nettpris", "linjesum", "antall"})
DATE_COLUMNS = frozenset({"dato"})
STATUS_COLUMNS = frozenset({"linjestatus"})

ACTIVE_WORDS = frozenset({"aktiv", "active", "ny", "new", "apen", "åpen", "open"})
INACTIVE_WORDS = frozenset({"inaktiv", "inactive", "lukket", "closed", "kansellert", "cancelled"})

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"[\s\u00a0]")
_LEADING_FLOAT = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DOTTED_DATE = re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{4})$")


# ============================================================================
# Record normalization
# ============================================================================

def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        return format_number(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def normalize_record(record: Mapping[str, Any]) -> Dict[str, str]:
    """Lowercase/trim keys and turn every value into a string (null -> "")."""
    return {normalize_header(str(key)): _stringify(value) for key, value in record.items()}


def format_number(value: float) -> str:
    """Render floats without a trailing ``.0`` when they are integral."""
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


# ============================================================================
# Value parsers
# ============================================================================

def parse_integer_like(value: str) -> Optional[int]:
    """Strip every non-digit and parse what is left."""
    digits = _NON_DIGITS.sub("", value or "")
    if not digits:
        return None
    return int(digits)


def parse_decimal_like(value: str) -> Optional[float]:
    """
    Parse a localized decimal.

    Whitespace (including NBSP) is removed. When both ``,`` and ``.`` occur,
    the last one is the decimal separator and the other is grouping. A lone
    ``,`` is the decimal separator. A lone ``.`` is always a decimal point.
    """
    compact = _WHITESPACE.sub("", value or "")
    if not compact:
        return None

    if "," in compact and "." in compact:
        if compact.rfind(",") > compact.rfind("."):
            compact = compact.replace(".", "").replace(",", ".", 1)
        else:
            compact = compact.replace(",", "")
    elif "," in compact:
        compact = compact.replace(",", ".", 1)

    match = _LEADING_FLOAT.match(compact)
    if not match:
        return None
    parsed = float(match.group(0))
    return parsed if math.isfinite(parsed) else None


def parse_date_like(value: str) -> Optional[str]:
    """``YYYY-MM-DD`` passes through, ``D.M.YYYY`` becomes ISO, anything else is null."""
    v = (value or "").strip()
    if not v:
        return None
    if _ISO_DATE.match(v):
        return v
    match = _DOTTED_DATE.match(v)
    if match:
        day, month, year = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return None


def parse_status(value: str) -> int:
    v = (value or "").strip().lower()
    if not v:
        return 1
    if v in ACTIVE_WORDS:
        return 1
    if v in INACTIVE_WORDS:
        return 0
    parsed = parse_integer_like(v)
    return 1 if parsed is None else parsed


def clean_raw(raw: str) -> str:
    """Trim and strip one leading and one trailing double quote."""
    value = (raw or "").strip()
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return value


def transform_value(column: str, raw: str, ordinal: int) -> Value:
    """
    Convert one raw string for ``column``.

    Args:
        column: Destination column name
        raw: Raw string value from the normalized record
        ordinal: 1-based fallback for ``linjenr``

    Returns:
        int, float, ISO date string, text or None
    """
    value = clean_raw(raw)

    if column in DATE_COLUMNS:
        return parse_date_like(value)
    if column in STATUS_COLUMNS:
        return parse_status(value)
    if column in INTEGER_COLUMNS:
        parsed = parse_integer_like(value)
        if parsed is not None:
            return parsed
        if column == "linjenr":
            return ordinal
        if column == "firmaid":
            return 1
        return None
    if column in DECIMAL_COLUMNS:
        return parse_decimal_like(value)
    return value if value != "" else None


# ============================================================================
# Row mapping
# ============================================================================

class RowMapper:
    """
    Map source records onto a column plan and validate them.

    The ``linjenr`` fallback is the record's position within the current
    contiguous run of equal ``ordrenr`` values. When the plan has no
    ``ordrenr`` column the source ordinal is used instead.
    """

    def __init__(self, spec: TableSpec, plan: Sequence[ColumnPlanItem], strict_mode: bool = False):
        self.spec = spec
        self.plan = list(plan)
        self.strict_mode = strict_mode
        self.columns = [item.db_column for item in self.plan]
        self._source_keys = [normalize_header(item.source_key) for item in self.plan]
        self._ordrenr_key = next(
            (key for key, item in zip(self._source_keys, self.plan) if item.db_column == "ordrenr"),
            None,
        )
        self._current_parent: Optional[int] = None
        self._position_in_parent = 0

    def _ordinal(self, normalized: Mapping[str, str], row_index: int) -> int:
        if self._ordrenr_key is None:
            return row_index + 1
        parent = parse_integer_like(clean_raw(normalized.get(self._ordrenr_key, "")))
        if parent != self._current_parent:
            self._current_parent = parent
            self._position_in_parent = 0
        self._position_in_parent += 1
        return self._position_in_parent

    def map(self, record: Mapping[str, Any], row_index: int) -> Tuple[Optional[List[Value]], Optional[str]]:
        """
        Returns:
            ``(values, None)`` for an accepted row, ``(None, reason)`` for a
            rejected one.

        Raises:
            RowRejectedError: In strict mode, for the first rejected row
        """
        normalized = normalize_record(record)
        ordinal = self._ordinal(normalized, row_index)

        values = [
            transform_value(column, normalized.get(key, ""), ordinal)
            for column, key in zip(self.columns, self._source_keys)
        ]

        error = self.spec.validate(dict(zip(self.columns, values)))
        if error is None:
            return values, None

        if self.strict_mode:
            raise RowRejectedError(
                f"Invalid row at index {row_index} for table {self.spec.name}: {error}",
                context={
                    "row_index": row_index,
                    "table_name": self.spec.name,
                    "validation_error": error,
                }
            )
        return None, error
