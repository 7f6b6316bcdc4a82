"""
Column planning: decide which source key feeds which destination column.
"""

import re
from typing import Iterable, List, Mapping, NamedTuple, Optional, Set

from core.exceptions import NoMatchingColumnsError

_WS = re.compile(r"\s+")

HEADER_ALIASES = {
    "ordrenr": "ordrenr",
    "dato": "dato",
    "kundenr": "kundenr",
    "kundenavn": "kundenavn",
    "kunderef": "kunderef",
    "valuta": "valutaid",
    "valutaid": "valutaid",
    "kundeordreref": "kundeordreref",
    "sum eksl. mva": "sum",
    "sum": "sum",
    "linjenr": "linjenr",
    "firma": "firmaid",
    "firmaid": "firmaid",
    "lager": "lagernavn",
    "lagernavn": "lagernavn",
    "vare": "varekode",
    "varekode": "varekode",
    "varenavn": "varenavn",
    "antall": "antall",
    "enhet": "enhet",
    "netpris": "nettpris",
    "nettpris": "nettpris",
    "linjesum": "linjesum",
    "status": "linjestatus",
    "linjestatus": "linjestatus",
    "varegruppe": "varegruppe",
}


class ColumnPlanItem(NamedTuple):
    source_key: str
    db_column: str


def normalize_header(value: str) -> str:
    """Trim, lowercase and collapse internal whitespace."""
    return _WS.sub(" ", (value or "").strip().lower())


def build_column_plan(
    source_keys: Iterable[str],
    valid_columns: Set[str],
    source_mapping: Optional[Mapping[str, str]] = None,
) -> List[ColumnPlanItem]:
    """
    Build the ordered column plan.

    Explicit mapping entries come first (in mapping order), then every
    remaining source key mapped through the alias table or verbatim.
    A destination column is never targeted twice and every target is in
    ``valid_columns``.
    """
    mapping = {
        normalize_header(source): normalize_header(target)
        for source, target in (source_mapping or {}).items()
    }
    plan: List[ColumnPlanItem] = []
    used_columns: Set[str] = set()
    used_keys: Set[str] = set()

    for source_key, db_column in mapping.items():
        if db_column not in valid_columns or db_column in used_columns:
            continue
        used_columns.add(db_column)
        used_keys.add(source_key)
        plan.append(ColumnPlanItem(source_key, db_column))

    for raw_key in source_keys:
        source_key = normalize_header(raw_key)
        if source_key in used_keys:
            continue
        db_column = mapping.get(source_key) or HEADER_ALIASES.get(source_key, source_key)
        if db_column not in valid_columns or db_column in used_columns:
            continue
        used_columns.add(db_column)
        used_keys.add(source_key)
        plan.append(ColumnPlanItem(source_key, db_column))

    return plan


def require_plan(plan: List[ColumnPlanItem], table: str) -> List[ColumnPlanItem]:
    if not plan:
        raise NoMatchingColumnsError(
            f"No matching columns found for table {table}",
            context={"table_name": table}
        )
    return plan
