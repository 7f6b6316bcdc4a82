"""
Pytest configuration and fixtures

Nothing here touches a real database: the loader, checkpoint store and
COPY sink are in-memory fakes with the same interface as the real ones.
"""

from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import pytest

from ingestion.checkpoint import CheckpointState
from ingestion.job_registry import JobRegistry
from ingestion.loaders.backpressure import CopySink, stream_chunks
from ingestion.loaders.postgres_loader import CopyOutcome
from ingestion.metrics import MetricsRecorder

ORDRE_TABLE_COLUMNS = [
    "ordrenr", "dato", "kundenr", "kundenavn", "kunderef", "kundeordreref",
    "firmaid", "lagernavn", "valutaid", "sum",
]
ORDRELINJE_TABLE_COLUMNS = [
    "linjenr", "ordrenr", "varekode", "varenavn", "antall", "enhet",
    "nettpris", "linjesum", "linjestatus",
]


class MemorySink(CopySink):
    """Collects COPY chunks; every ``stall_every``-th write reports a full buffer."""

    def __init__(self, stall_every: int = 0):
        self.chunks: List[bytes] = []
        self.stall_every = stall_every
        self.drain_calls = 0
        self.aborted = False

    async def write(self, chunk: bytes) -> bool:
        self.chunks.append(chunk)
        return not (self.stall_every and len(self.chunks) % self.stall_every == 0)

    async def drained(self) -> None:
        self.drain_calls += 1

    async def close(self) -> int:
        return len(self.lines)

    async def abort(self) -> None:
        self.aborted = True

    @property
    def lines(self) -> List[str]:
        return b"".join(self.chunks).decode("utf-8").splitlines()


class FakeLoader:
    """
    In-memory stand-in for ``PostgresLoader``.

    Segments are committed only when their chunk stream finishes cleanly;
    ``on_commit`` is called with the number of committed segments.
    """

    def __init__(
        self,
        columns: Optional[Dict[str, List[str]]] = None,
        on_commit: Callable[[int], None] = None,
        existing_keys: Optional[set] = None,
    ):
        self.columns = columns or {"ordre": ORDRE_TABLE_COLUMNS, "ordrelinje": ORDRELINJE_TABLE_COLUMNS}
        self.on_commit = on_commit
        self.existing_keys = set(existing_keys or ())
        self.committed: Dict[str, List[str]] = {}
        self.segments = 0
        self.rolled_back = 0

    @asynccontextmanager
    async def _connect(self):
        yield object()

    def connection(self):
        return self._connect()

    async def get_table_columns(self, conn, table: str) -> List[str]:
        return list(self.columns.get(table, []))

    async def copy_into(self, conn, target, columns, chunks, stats, sizer=None, heap_guard=None, is_cancelled=None) -> int:
        sink = MemorySink()
        await stream_chunks(chunks, sink, stats, sizer=sizer, heap_guard=heap_guard, is_cancelled=is_cancelled)
        self.committed.setdefault(target, []).extend(sink.lines)
        return len(sink.lines)

    async def copy_segment(self, conn, table, columns, chunks, options, stats,
                           sizer=None, heap_guard=None, is_cancelled=None) -> CopyOutcome:
        sink = MemorySink()
        try:
            await stream_chunks(chunks, sink, stats, sizer=sizer, heap_guard=heap_guard, is_cancelled=is_cancelled)
        except BaseException:
            self.rolled_back += 1
            raise

        inserted = 0
        rows = self.committed.setdefault(table, [])
        for line in sink.lines:
            key = line.split("\t", 1)[0]
            if key in self.existing_keys:
                continue
            self.existing_keys.add(key)
            rows.append(line)
            inserted += 1

        self.segments += 1
        if self.on_commit is not None:
            self.on_commit(self.segments)
        return CopyOutcome(rows_copied=len(sink.lines), rows_inserted=inserted)


class MemoryCheckpointStore:
    """Checkpoint store kept in a dict."""

    def __init__(self):
        self.saved: Dict[str, CheckpointState] = {}
        self.save_calls = 0

    async def load(self, job_id: str) -> Optional[CheckpointState]:
        return self.saved.get(job_id)

    async def save(self, state: CheckpointState) -> None:
        self.save_calls += 1
        self.saved[state.job_id] = state

    async def delete(self, job_id: str) -> None:
        self.saved.pop(job_id, None)


@pytest.fixture
def job_registry():
    """Fresh job registry per test"""
    return JobRegistry(max_jobs=50)


@pytest.fixture
def recorder():
    """Fresh metrics recorder per test"""
    return MetricsRecorder(max_runs=10, max_bulk_runs=5)


@pytest.fixture
def checkpoint_store():
    return MemoryCheckpointStore()


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def write_csv(tmp_path):
    """Write a CSV file from text and return its path"""

    def _write(text: str, name: str = "ordre.csv") -> str:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def mock_csv_orders():
    """Three orders, the second one without an order number"""
    return (
        "Ordrenr;Dato;Kundenr;Valuta;Sum eksl. mva\n"
        "1001;15.01.2024;K000001;NOK;1 234,50\n"
        ";16.01.2024;K000002;NOK;99\n"
        "1003;2024-01-17;K000003;EUR;12.5\n"
    )


@pytest.fixture
def loader_factory():
    """The ``FakeLoader`` class, for tests that need custom columns or hooks"""
    return FakeLoader


@pytest.fixture
def sink_factory():
    return MemorySink
