"""
Deterministic synthetic order data.

The same formulas feed the streaming ``generator`` source (dict records for
``ordre`` or ``ordrelinje``) and the fast bulk path (value tuples in staging
column order for all three order tables).
"""

import asyncio
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Tuple
import logging

from core.exceptions import InvalidRequestError
from ingestion.base import CancellationToken, RowSource
from ingestion.tables import ORDRE_COLUMNS, ORDRELINJE_COLUMNS
from models.base import SourceType

logger = logging.getLogger(__name__)

ORDER_BASE = 10_000
PRODUCT_COUNT = 500
LAGERNAVN = "Hovedkontor Oslo Hovedlager"
FIRMA_COUNT = 5

PROSJEKTER = (
    "Nordsjøen Vedlikehold", "Mongstad Oppgradering", "Sverdrup Fase 2",
    "Kårstø Drift", "Snøhvit LNG", "Martin Linge", "Troll A",
    "Hammerfest LNG", "Oseberg Sør", "Gullfaks Subsea",
    "Åsgard Turnaround", "Valemon Drift", "Gina Krog", "Edvard Grieg",
    "Sleipner Vest", "Statfjord C", "Njord Bravo", "Heidrun TLP",
)
AVDELINGER = ("Innkjøp", "Vedlikehold", "Drift", "Prosjekt", "Lager", "HMS", "Mek. Verksted", "Elektro")

# How often the generator hands control back to the event loop
YIELD_EVERY = 1000


def customer_number(i: int, customers: int) -> str:
    return f"K{(i % customers) + 1:06d}"


def lines_for_order(i: int, lines_per_order: int) -> int:
    return ((i * 7) % lines_per_order) + 1


def generate_orders(total_orders: int, customers: int) -> Iterator[Tuple]:
    """Rows in ``ORDRE_COLUMNS`` order."""
    for i in range(1, total_orders + 1):
        ordrenr = ORDER_BASE + i
        year = 2024 + (i % 3)
        month = (i % 12) + 1
        day = (i % 28) + 1
        yield (
            ordrenr,
            f"{year}-{month:02d}-{day:02d}",
            customer_number(i, customers),
            f"PO-{year}-{ordrenr:06d}",
            "Auto Bulk Kunde",
            (i % FIRMA_COUNT) + 1,
            LAGERNAVN,
            "NOK",
            0,
        )


def generate_order_lines(total_orders: int, lines_per_order: int) -> Iterator[Tuple]:
    """Rows in ``ORDRELINJE_COLUMNS`` order."""
    for i in range(1, total_orders + 1):
        ordrenr = ORDER_BASE + i
        for j in range(1, lines_for_order(i, lines_per_order) + 1):
            antall = ((i + j) % 50) + 1
            nettpris = ((i * 11 + j) % 5000) + 50
            yield (
                j,
                ordrenr,
                f"V{(i * j) % PRODUCT_COUNT + 1:05d}",
                antall,
                "stk",
                nettpris,
                antall * nettpris,
                1,
            )


def generate_references(total_orders: int, customers: int, lines_per_order: int) -> Iterator[Tuple]:
    """Rows in ``HENVISNING_COLUMNS`` order; every fifth order only references its first two lines."""
    for i in range(1, total_orders + 1):
        ordrenr = ORDER_BASE + i
        kundenr = customer_number(i, customers)
        for j in range(1, lines_for_order(i, lines_per_order) + 1):
            if i % 5 == 0 and j > 2:
                continue
            yield (
                ordrenr,
                j,
                PROSJEKTER[(i + j) % len(PROSJEKTER)],
                f"{AVDELINGER[(i + j) % len(AVDELINGER)]}-{kundenr}",
                f"WO-{10000 + ((i * 7 + j * 3) % 90000)}",
                f"TAG-{chr(65 + (i % 26))}{(i * j) % 999 + 1}" if (i + j) % 3 == 0 else None,
                f"Kostnadssted {1000 + (i % 9000)}" if (i + j) % 4 == 0 else None,
            )


class GeneratorRowSource(RowSource):
    """Synthetic ``ordre`` or ``ordrelinje`` records as a streaming source."""

    source_type = SourceType.GENERATOR

    def __init__(
        self,
        table: str,
        total_orders: int,
        customers: int = 100,
        lines_per_order: int = 5,
        resume_state: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        super().__init__(resume_state, cancel_token)
        if table == "ordre":
            self._columns = ORDRE_COLUMNS
            self._rows = lambda: generate_orders(total_orders, customers)
        elif table == "ordrelinje":
            self._columns = ORDRELINJE_COLUMNS
            self._rows = lambda: generate_order_lines(total_orders, lines_per_order)
        else:
            raise InvalidRequestError(
                f"Generator source cannot produce rows for table {table}",
                context={"table_name": table, "supported": ["ordre", "ordrelinje"]}
            )
        self.table = table

    async def rows(self) -> AsyncIterator[Dict[str, Any]]:
        to_skip = self._position
        produced = 0
        for values in self._rows():
            if to_skip:
                to_skip -= 1
                continue
            produced += 1
            if produced % YIELD_EVERY == 0:
                self.check_cancelled()
                await asyncio.sleep(0)
            self._advance()
            yield dict(zip(self._columns, values))


async def iterate_rows(
    rows: Iterator[Tuple],
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[Tuple]:
    """Async view over a synthetic row iterator that yields to the loop every ``YIELD_EVERY`` rows."""
    for produced, values in enumerate(rows, start=1):
        if produced % YIELD_EVERY == 0:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            await asyncio.sleep(0)
        yield values
