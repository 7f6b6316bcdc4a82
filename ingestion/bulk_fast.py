"""
Fast bulk path: synthetic orders through UNLOGGED staging tables.

Generates ``ordre``, ``ordrelinje`` and ``ordre_henvisning`` rows, COPYs
each into its staging table sequentially (one encoder pass per table, one
shared ``BatchStats``), then migrates staging into the final tables.
"""

import time
import uuid
import logging

import asyncpg

from core.config import settings
from core.exceptions import DatabaseError, ETLException, JobCancelledError
from ingestion.extractors.generator import (
    generate_order_lines, generate_orders, generate_references, iterate_rows,
)
from ingestion.job_registry import JobRegistry, registry as default_registry
from ingestion.loaders.backpressure import AdaptiveBatchSizer, BatchStats, HeapGuard
from ingestion.loaders.copy_encoder import encode_chunks
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.loaders.staging import STAGING_TABLES, StagingMigrator
from ingestion.metrics import MetricsRecorder, metrics as default_metrics
from models.base import SourceType
from schemas.etl import BulkFastRequest, BulkFastResult

logger = logging.getLogger(__name__)


class BulkFastRunner:
    """
    Run the staging-table bulk load for synthetic data.

    The job is registered as table ``ordre`` with source ``generator``.
    """

    def __init__(
        self,
        loader: PostgresLoader = None,
        registry: JobRegistry = None,
        metrics: MetricsRecorder = None,
        migrator_factory=StagingMigrator,
    ):
        self.loader = loader or PostgresLoader()
        self.registry = registry or default_registry
        self.metrics = metrics or default_metrics
        self.migrator_factory = migrator_factory

    def _row_sources(self, request: BulkFastRequest):
        return {
            "ordre": generate_orders(request.total_orders, request.customers),
            "ordrelinje": generate_order_lines(request.total_orders, request.lines_per_order),
            "ordre_henvisning": generate_references(
                request.total_orders, request.customers, request.lines_per_order
            ),
        }

    async def run(self, request: BulkFastRequest) -> BulkFastResult:
        """
        Returns:
            BulkFastResult with status ``completed`` or ``cancelled``; a
            cancelled run migrates nothing

        Raises:
            JobConflictError: The job id is already pending or running
            ETLException: Any failure during staging or migration
        """
        job_id = request.job_id or f"bulk-fast-{uuid.uuid4().hex[:12]}"
        job = self.registry.register(job_id, "ordre", SourceType.GENERATOR.value)
        token = job.cancel_token
        self.registry.start(job_id)

        stats = BatchStats()
        sizer = AdaptiveBatchSizer(stats)
        heap_guard = HeapGuard(
            warn_mb=settings.ETL_HEAP_WARN_MB,
            abort_mb=settings.ETL_HEAP_ABORT_MB,
            stage="bulk-fast",
        )
        started = time.perf_counter()
        staged = {}

        logger.info(
            f"Starting fast bulk load {job_id}: {request.total_orders} orders, "
            f"{request.customers} customers, up to {request.lines_per_order} lines per order"
        )

        try:
            async with self.loader.connection() as conn:
                migrator = self.migrator_factory(conn)
                await migrator.configure_session()
                await migrator.prepare()
                await migrator.ensure_dimensions(request.customers)

                rows_by_table = self._row_sources(request)
                for spec, staging, columns in STAGING_TABLES:
                    chunks = encode_chunks(iterate_rows(rows_by_table[spec.name], token), stats)
                    staged[spec.name] = await self.loader.copy_into(
                        conn, staging, columns, chunks, stats,
                        sizer=sizer, heap_guard=heap_guard,
                        is_cancelled=lambda: token.cancelled,
                    )
                    logger.info(f"Staged {staged[spec.name]} rows into {staging}")
                    self.registry.update_progress(job_id, attempted_rows=sum(staged.values()))

                counts = await migrator.migrate()
                await migrator.rebuild_indexes()

        except JobCancelledError:
            reason = token.reason or "cancelled"
            self.registry.mark_cancelled(job_id, reason)
            self._record(job_id, staged, started, heap_guard, "cancelled")
            logger.info(f"Fast bulk load {job_id} cancelled ({reason}) after staging {sum(staged.values())} rows")
            return BulkFastResult(
                job_id=job_id,
                status="cancelled",
                orders=0,
                order_lines=0,
                henvisninger=0,
                total_rows=0,
                staged_rows=sum(staged.values()),
                duration_ms=int((time.perf_counter() - started) * 1000),
                rows_per_second=0.0,
                peak_memory_mb=round(heap_guard.peak_mb, 2) if heap_guard.peak_mb else None,
                rows_per_batch=stats.rows_per_batch,
                drain_count=stats.drain_count,
            )

        except ETLException as e:
            logger.error(f"Fast bulk load {job_id} failed: {e.message}", extra={"error_context": e.to_dict()})
            self.registry.fail(job_id, e.reason)
            self._record(job_id, staged, started, heap_guard, "failed")
            e.partial_result = {"jobId": job_id, "staged": dict(staged)}
            raise

        except asyncpg.PostgresError as e:
            error = DatabaseError(
                "Fast bulk load failed",
                context={"job_id": job_id, "staged": dict(staged), "sqlstate": getattr(e, "sqlstate", None)},
                original_exception=e
            )
            logger.error(f"Fast bulk load {job_id} failed: {e}")
            self.registry.fail(job_id, error.reason)
            self._record(job_id, staged, started, heap_guard, "failed")
            error.partial_result = {"jobId": job_id, "staged": dict(staged)}
            raise error

        duration_ms = int((time.perf_counter() - started) * 1000)
        total = counts.get("ordre", 0) + counts.get("ordrelinje", 0) + counts.get("ordre_henvisning", 0)
        rows_per_second = round(total * 1000 / duration_ms, 2) if duration_ms > 0 else 0.0
        heap_guard.sample()

        self.registry.update_progress(job_id, attempted_rows=total, inserted_rows=total)
        self.registry.complete(job_id)

        result = BulkFastResult(
            job_id=job_id,
            orders=counts.get("ordre", 0),
            order_lines=counts.get("ordrelinje", 0),
            henvisninger=counts.get("ordre_henvisning", 0),
            total_rows=total,
            staged_rows=sum(staged.values()),
            duration_ms=duration_ms,
            rows_per_second=rows_per_second,
            peak_memory_mb=round(heap_guard.peak_mb, 2) if heap_guard.peak_mb else None,
            rows_per_batch=stats.rows_per_batch,
            drain_count=stats.drain_count,
        )
        self.metrics.record_bulk_run(
            job_id=job_id,
            total_rows=total,
            duration_ms=duration_ms,
            rows_per_second=rows_per_second,
            peak_memory_mb=result.peak_memory_mb,
        )
        logger.info(
            f"Fast bulk load {job_id} completed: {total} rows in {duration_ms}ms "
            f"({rows_per_second} rows/s, batch={stats.rows_per_batch}, drains={stats.drain_count})"
        )
        return result

    def _record(self, job_id: str, staged, started: float, heap_guard: HeapGuard, status: str) -> None:
        duration_ms = int((time.perf_counter() - started) * 1000)
        self.metrics.record_bulk_run(
            job_id=job_id,
            total_rows=sum(staged.values()),
            duration_ms=duration_ms,
            rows_per_second=0.0,
            peak_memory_mb=heap_guard.peak_mb or None,
            status=status,
        )
