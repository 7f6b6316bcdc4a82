"""
Destination table variants.

Each supported target table is described by one ``TableSpec``: its name,
the required columns (checked in order) and the conflict key used by the
fast bulk path. The ``TableSpec`` is looked up once per run.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple, Any

from core.exceptions import UnsupportedTableError


@dataclass(frozen=True)
class TableSpec:
    name: str
    required: Tuple[str, ...]
    conflict_key: Tuple[str, ...]
    streamable: bool = True

    def validate(self, values: Mapping[str, Any]) -> Optional[str]:
        """
        Return ``"missing <column>"`` for the first required column that is
        null (or absent from the column plan), otherwise None.
        """
        for column in self.required:
            if values.get(column) is None:
                return f"missing {column}"
        return None


ORDRE = TableSpec("ordre", ("ordrenr",), ("ordrenr",))
ORDRELINJE = TableSpec("ordrelinje", ("ordrenr", "linjenr"), ("linjenr", "ordrenr"))
KUNDE = TableSpec("kunde", ("kundenr",), ("kundenr",))
VARE = TableSpec("vare", ("varekode",), ("varekode",))
FIRMA = TableSpec("firma", ("firmaid",), ("firmaid",))
LAGER = TableSpec("lager", ("lagernavn", "firmaid"), ("lagernavn", "firmaid"))
ORDRE_HENVISNING = TableSpec(
    "ordre_henvisning", ("ordrenr", "linjenr"), ("ordrenr", "linjenr"), streamable=False
)

TABLES: Dict[str, TableSpec] = {
    spec.name: spec
    for spec in (ORDRE, ORDRELINJE, KUNDE, VARE, FIRMA, LAGER, ORDRE_HENVISNING)
}

# Column order used by the synthetic generator and the staging tables
ORDRE_COLUMNS = (
    "ordrenr", "dato", "kundenr", "kundeordreref", "kunderef",
    "firmaid", "lagernavn", "valutaid", "sum",
)
ORDRELINJE_COLUMNS = (
    "linjenr", "ordrenr", "varekode", "antall", "enhet",
    "nettpris", "linjesum", "linjestatus",
)
HENVISNING_COLUMNS = (
    "ordrenr", "linjenr",
    "henvisning1", "henvisning2", "henvisning3", "henvisning4", "henvisning5",
)


def get_table_spec(table: str, streaming: bool = True) -> TableSpec:
    """Look up the ``TableSpec`` for ``table``; unknown (or non-streamable) tables are rejected."""
    spec = TABLES.get((table or "").strip().lower())
    if spec is None or (streaming and not spec.streamable):
        raise UnsupportedTableError(
            f"Unsupported table: {table}",
            context={"table_name": table, "supported": sorted(
                name for name, s in TABLES.items() if s.streamable or not streaming
            )}
        )
    return spec
