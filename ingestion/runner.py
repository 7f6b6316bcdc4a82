# ============================================================================
# File: ingestion/runner.py
# Description: Streaming ETL orchestrator (source -> plan -> transform -> COPY)
# ============================================================================
"""
Streaming ETL Runner - Orchestrates one streaming ingestion job.

This module provides:
- Request validation before any I/O
- Column planning from the first record (or a restored checkpoint)
- Row mapping with rejection counting and dead-lettering
- Segmented COPY with checkpoints after every committed segment
- Self-termination limits (rows, duration, dead letters, memory)
- Job registry updates, durable failure records and run metrics
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set
import logging

import httpx

from core.config import settings
from core.exceptions import (
    ETLException,
    ExtractionError,
    InvalidRequestError,
    JobCancelledError,
    NoMatchingColumnsError,
    ResourceLimitError,
    RowRejectedError,
    TransformationError,
)
from ingestion.base import CancellationToken, RowSource
from ingestion.checkpoint import CheckpointState, CheckpointStore
from ingestion.dead_letter import DeadLetterCollector
from ingestion.extractors import APIRowSource, CSVRowSource, GeneratorRowSource, JSONRowSource
from ingestion.failures import FailureLog
from ingestion.job_registry import Job, JobRegistry, registry as default_registry
from ingestion.loaders.backpressure import AdaptiveBatchSizer, BatchStats, HeapGuard
from ingestion.loaders.copy_encoder import encode_chunks
from ingestion.loaders.postgres_loader import CopyOptions, PostgresLoader
from ingestion.metrics import MetricsRecorder, metrics as default_metrics
from ingestion.tables import TableSpec, get_table_spec
from ingestion.transformers.column_planner import ColumnPlanItem, build_column_plan, require_plan
from ingestion.transformers.normalizer import RowMapper
from models.base import ConflictMode, SourceType
from schemas.etl import StreamingEtlRequest, StreamingEtlResult

logger = logging.getLogger(__name__)

GENERATOR_TABLES = ("ordre", "ordrelinje")


@dataclass
class RunState:
    """Mutable counters for one run."""
    job_id: str
    table: str
    source_type: SourceType
    started: float = field(default_factory=time.perf_counter)
    attempted: int = 0
    inserted: int = 0
    rejected: int = 0
    conflict_skipped: int = 0
    # Counts as of the last committed segment
    committed_attempted: int = 0
    committed_inserted: int = 0
    committed_rejected: int = 0
    columns: List[str] = field(default_factory=list)
    resumed: bool = False
    exhausted: bool = False

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    @property
    def rolled_back(self) -> int:
        return self.attempted - self.committed_attempted

    def commit(self) -> None:
        self.committed_attempted = self.attempted
        self.committed_inserted = self.inserted
        self.committed_rejected = self.rejected


@dataclass
class PreparedRun:
    """A validated request whose job is registered but not yet started."""
    request: StreamingEtlRequest
    spec: TableSpec
    job: Job


def validate_request(request: StreamingEtlRequest) -> TableSpec:
    """
    Check cross-field rules that pydantic cannot express.

    Raises:
        InvalidRequestError: Missing source section, upsert without keys,
            checkpoint/dead-letter without a job id, generator table mismatch
        UnsupportedTableError: Unknown destination table
    """
    section = {
        SourceType.CSV: request.csv,
        SourceType.JSON: request.json_source,
        SourceType.API: request.api,
        SourceType.GENERATOR: request.generator,
    }[request.source_type]
    if section is None:
        raise InvalidRequestError(
            f"Missing '{request.source_type.value}' section for sourceType {request.source_type.value}",
            context={"source_type": request.source_type.value}
        )
    if request.on_conflict == ConflictMode.UPSERT and not request.upsert_key_columns:
        raise InvalidRequestError(
            "onConflict 'upsert' requires upsertKeyColumns",
            context={"table_name": request.table}
        )
    if (request.checkpoint or request.dead_letter) and not request.job_id:
        raise InvalidRequestError(
            "checkpoint and deadLetter require a jobId",
            context={"checkpoint": request.checkpoint, "dead_letter": request.dead_letter}
        )

    spec = get_table_spec(request.table)

    if request.source_type == SourceType.GENERATOR and spec.name not in GENERATOR_TABLES:
        raise InvalidRequestError(
            f"Generator source cannot produce rows for table {spec.name}",
            context={"table_name": spec.name, "supported": list(GENERATOR_TABLES)}
        )
    return spec


class StreamingETLRunner:
    """
    Run streaming ingestion jobs.

    Usage:
        runner = StreamingETLRunner(loader, checkpoints, failures)
        result = await runner.run(request)

    All collaborators are injectable; the registry and metrics default to the
    process-wide instances.
    """

    def __init__(
        self,
        loader: PostgresLoader = None,
        checkpoints: Optional[CheckpointStore] = None,
        failures: Optional[FailureLog] = None,
        registry: JobRegistry = None,
        metrics: MetricsRecorder = None,
        http_client: Optional[httpx.AsyncClient] = None,
        dead_letter_dir: Optional[str] = None,
        checkpoint_interval: int = None,
    ):
        self.loader = loader or PostgresLoader()
        self.checkpoints = checkpoints
        self.failures = failures
        self.registry = registry or default_registry
        self.metrics = metrics or default_metrics
        self.http_client = http_client
        self.dead_letter_dir = dead_letter_dir
        self.checkpoint_interval = checkpoint_interval or settings.ETL_CHECKPOINT_INTERVAL
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def prepare(self, request: StreamingEtlRequest) -> PreparedRun:
        """
        Validate ``request`` and register its job.

        Raises:
            InvalidRequestError, UnsupportedTableError: Invalid request
            JobConflictError: The job id is already pending or running
        """
        spec = validate_request(request)
        job_id = request.job_id or f"{spec.name}-{uuid.uuid4().hex[:12]}"
        job = self.registry.register(job_id, spec.name, request.source_type.value)
        return PreparedRun(request=request, spec=spec, job=job)

    async def run(self, request: StreamingEtlRequest) -> StreamingEtlResult:
        return await self.execute(self.prepare(request))

    def run_in_background(self, request: StreamingEtlRequest) -> Job:
        """Start a job as an asyncio task and return its registry entry immediately."""
        prepared = self.prepare(request)
        task = asyncio.create_task(self._execute_quietly(prepared))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return prepared.job

    async def _execute_quietly(self, prepared: PreparedRun) -> None:
        try:
            await self.execute(prepared)
        except ETLException as e:
            logger.debug(f"Background job {prepared.job.job_id} ended with {e.reason}")

    async def shutdown(self) -> None:
        """Cancel background jobs and wait for them to record their status."""
        for job in self.registry.list(limit=self.registry.max_jobs):
            if not job.status.is_terminal:
                job.cancel_token.cancel("shutdown")
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, prepared: PreparedRun) -> StreamingEtlResult:
        """
        Run a prepared job to completion.

        Returns:
            StreamingEtlResult with status ``completed`` or ``cancelled``

        Raises:
            ETLException: Any non-cancellation failure, with
                ``partial_result`` holding the counts reached so far
        """
        request, spec, job = prepared.request, prepared.spec, prepared.job
        token = job.cancel_token
        state = RunState(job_id=job.job_id, table=spec.name, source_type=request.source_type)
        dead_letters = DeadLetterCollector(job.job_id, spec.name, self.dead_letter_dir) if request.dead_letter else None
        heap_guard = HeapGuard(
            warn_mb=settings.ETL_HEAP_WARN_MB,
            abort_mb=request.max_heap_mb or settings.ETL_HEAP_ABORT_MB,
            stage="copy",
        )
        stats = BatchStats()

        self.registry.start(job.job_id)
        logger.info(
            f"Starting streaming ETL job {job.job_id}: {request.source_type.value} -> {spec.name}",
            extra={"job_id": job.job_id, "table_name": spec.name}
        )

        try:
            # --------------------------------------------------
            # PHASE 1: CHECKPOINT
            # --------------------------------------------------
            checkpoint = await self._load_checkpoint(request, state)

            source = self._build_source(request, spec, job.job_id, token, checkpoint)

            async with self.loader.connection() as conn:
                # --------------------------------------------------
                # PHASE 2: COLUMN PLAN
                # --------------------------------------------------
                valid_columns = await self.loader.get_table_columns(conn, spec.name)
                if not valid_columns:
                    raise NoMatchingColumnsError(
                        f"Table {spec.name} has no columns",
                        context={"table_name": spec.name}
                    )

                records = source.rows().__aiter__()
                try:
                    first = await records.__anext__()
                except StopAsyncIteration:
                    first = None

                if first is None:
                    state.exhausted = True
                    if checkpoint is not None:
                        state.columns = [item.db_column for item in checkpoint.column_plan]
                    logger.info(f"Source for job {job.job_id} produced no records")
                else:
                    if checkpoint is not None and checkpoint.column_plan:
                        plan = checkpoint.column_plan
                    else:
                        plan = build_column_plan(list(first.keys()), valid_columns, request.source_mapping)
                    require_plan(plan, spec.name)
                    state.columns = [item.db_column for item in plan]
                    options = self._copy_options(request, state.columns)

                    # --------------------------------------------------
                    # PHASE 3: TRANSFORM + LOAD (one transaction per segment)
                    # --------------------------------------------------
                    mapper = RowMapper(spec, plan, request.strict_mode)
                    pending = _prepend(first, records)
                    sizer = AdaptiveBatchSizer(stats)
                    segment_size = self.checkpoint_interval if request.checkpoint else None

                    while not state.exhausted:
                        outcome = await self.loader.copy_segment(
                            conn,
                            spec.name,
                            state.columns,
                            encode_chunks(
                                self._segment_rows(request, state, mapper, pending, token,
                                                   dead_letters, heap_guard, segment_size),
                                stats,
                            ),
                            options,
                            stats,
                            sizer=sizer,
                            heap_guard=heap_guard,
                            is_cancelled=lambda: token.cancelled,
                        )
                        state.commit()
                        state.conflict_skipped += outcome.conflict_skipped
                        self._report_progress(state, dead_letters)

                        if request.checkpoint and not state.exhausted:
                            await self._save_checkpoint(request, state, source, plan)

            # --------------------------------------------------
            # PHASE 4: FINALIZE
            # --------------------------------------------------
            dead_letter_path = await dead_letters.flush() if dead_letters else None
            heap_guard.sample()
            result = self._result(state, dead_letters, dead_letter_path, heap_guard, "completed")

            self.registry.update_progress(
                job.job_id,
                attempted_rows=state.attempted,
                inserted_rows=state.inserted,
                rejected_rows=state.rejected,
                dead_letter_count=dead_letters.total_count if dead_letters else 0,
            )
            self.registry.complete(job.job_id)
            if request.checkpoint and self.checkpoints is not None:
                await self.checkpoints.delete(job.job_id)

            logger.info(
                f"Streaming ETL job {job.job_id} completed: attempted={state.attempted} "
                f"inserted={state.inserted} rejected={state.rejected} "
                f"conflict_skipped={state.conflict_skipped} in {result.duration_ms}ms "
                f"({result.rows_per_second} rows/s)"
            )
            self._record_metrics(result, "completed")
            return result

        except JobCancelledError:
            dead_letter_path = await self._flush_quietly(dead_letters)
            reason = token.reason or "cancelled"
            self._report_committed(state, dead_letters)
            self.registry.mark_cancelled(job.job_id, reason)
            result = self._result(state, dead_letters, dead_letter_path, heap_guard, "cancelled")
            logger.info(
                f"Streaming ETL job {job.job_id} cancelled ({reason}) after {state.attempted} rows "
                f"({state.committed_attempted} committed)"
            )
            self._record_metrics(result, "cancelled", reason)
            return result

        except asyncio.CancelledError:
            self.registry.mark_cancelled(job.job_id, "task cancelled")
            raise

        except ETLException as e:
            await self._handle_failure(e, state, dead_letters, heap_guard)
            raise

        except Exception as e:
            logger.exception(f"Unexpected error in streaming ETL job {job.job_id}")
            error = ETLException(
                "Unexpected error in streaming ETL pipeline",
                context={"job_id": job.job_id, "table_name": spec.name},
                original_exception=e
            )
            await self._handle_failure(error, state, dead_letters, heap_guard)
            raise error

    async def _segment_rows(
        self,
        request: StreamingEtlRequest,
        state: RunState,
        mapper: RowMapper,
        records: AsyncIterator[Dict[str, Any]],
        token: CancellationToken,
        dead_letters: Optional[DeadLetterCollector],
        heap_guard: HeapGuard,
        segment_size: Optional[int],
    ) -> AsyncIterator[list]:
        """
        Pull records for one segment, map them, and yield accepted rows.

        Stops after ``segment_size`` attempted rows (None = until the source
        is exhausted); sets ``state.exhausted`` when the source ends.
        """
        progress_interval = request.progress_interval or settings.ETL_PROGRESS_INTERVAL
        in_segment = 0

        while segment_size is None or in_segment < segment_size:
            try:
                record = await records.__anext__()
            except StopAsyncIteration:
                state.exhausted = True
                return

            token.raise_if_cancelled()
            self._check_limits(request, state)

            row_index = state.attempted
            state.attempted += 1
            in_segment += 1

            try:
                values, reason = mapper.map(record, row_index)
            except RowRejectedError as e:
                state.rejected += 1
                if dead_letters is not None:
                    dead_letters.add(row_index, record, e.context.get("validation_error", e.message))
                raise
            if values is None:
                state.rejected += 1
                if dead_letters is not None:
                    dead_letters.add(row_index, record, reason)
                    await dead_letters.flush_if_over_capacity()
            else:
                state.inserted += 1
                yield values

            if state.attempted % progress_interval == 0:
                self._report_progress(state, dead_letters)
                self._check_heap(request, heap_guard, state)

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def _check_limits(self, request: StreamingEtlRequest, state: RunState) -> None:
        """Called before each row is processed."""
        if request.max_rows is not None and state.attempted >= request.max_rows:
            raise ResourceLimitError(
                f"Row limit of {request.max_rows} exceeded",
                ResourceLimitError.ROW_LIMIT,
                context={"job_id": state.job_id, "max_rows": request.max_rows}
            )
        if request.max_duration_ms is not None and state.elapsed_ms > request.max_duration_ms:
            raise ResourceLimitError(
                f"Duration limit of {request.max_duration_ms}ms exceeded",
                ResourceLimitError.DURATION_LIMIT,
                context={"job_id": state.job_id, "max_duration_ms": request.max_duration_ms}
            )
        if request.max_dead_letters is not None and state.rejected >= request.max_dead_letters:
            raise ResourceLimitError(
                f"Dead letter limit of {request.max_dead_letters} reached",
                ResourceLimitError.DEAD_LETTER_LIMIT,
                context={"job_id": state.job_id, "rejected_rows": state.rejected}
            )

    def _check_heap(self, request: StreamingEtlRequest, heap_guard: HeapGuard, state: RunState) -> None:
        if request.max_heap_mb is None:
            return
        used = heap_guard.sample()
        if used >= request.max_heap_mb:
            raise ResourceLimitError(
                f"Memory limit of {request.max_heap_mb} MB exceeded ({used:.1f} MB)",
                ResourceLimitError.HEAP_LIMIT,
                context={"job_id": state.job_id, "rss_mb": round(used, 2)}
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_source(
        self,
        request: StreamingEtlRequest,
        spec: TableSpec,
        job_id: str,
        token: CancellationToken,
        checkpoint: Optional[CheckpointState],
    ) -> RowSource:
        resume_state = checkpoint.resume_state if checkpoint else None

        if request.source_type == SourceType.CSV:
            return CSVRowSource(
                request.csv.file_path,
                delimiter=request.csv.delimiter,
                compression=request.csv.compression,
                resume_state=resume_state,
                cancel_token=token,
            )
        if request.source_type == SourceType.JSON:
            return JSONRowSource(
                request.json_source.file_path,
                mode=request.json_source.mode,
                compression=request.json_source.compression,
                resume_state=resume_state,
                cancel_token=token,
            )
        if request.source_type == SourceType.API:
            return APIRowSource(
                request.api,
                resume_state=resume_state,
                cancel_token=token,
                on_resume_state=lambda s: self.registry.set_checkpoint(job_id, s),
                client=self.http_client,
            )
        return GeneratorRowSource(
            spec.name,
            total_orders=request.generator.total_orders,
            customers=request.generator.customers,
            lines_per_order=request.generator.lines_per_order,
            resume_state=resume_state,
            cancel_token=token,
        )

    def _copy_options(self, request: StreamingEtlRequest, columns: List[str]) -> CopyOptions:
        if request.on_conflict == ConflictMode.UPSERT:
            missing = [c for c in request.upsert_key_columns if c not in columns]
            if missing:
                raise InvalidRequestError(
                    f"Upsert key columns are not in the column plan: {', '.join(missing)}",
                    context={"table_name": request.table, "columns": columns}
                )
        return CopyOptions(
            mode=request.on_conflict,
            key_columns=request.upsert_key_columns,
            update_columns=request.upsert_update_columns,
        )

    async def _load_checkpoint(self, request: StreamingEtlRequest, state: RunState) -> Optional[CheckpointState]:
        if not request.checkpoint or self.checkpoints is None:
            return None
        checkpoint = await self.checkpoints.load(state.job_id)
        if checkpoint is None:
            return None
        if checkpoint.table != state.table:
            raise InvalidRequestError(
                f"Checkpoint for job {state.job_id} belongs to table {checkpoint.table}",
                context={"job_id": state.job_id, "table_name": state.table}
            )
        state.attempted = checkpoint.attempted_rows
        state.inserted = checkpoint.inserted_rows
        state.rejected = checkpoint.rejected_rows
        state.commit()
        state.resumed = True
        self.registry.set_checkpoint(state.job_id, checkpoint.resume_state)
        logger.info(
            f"Resuming job {state.job_id} from checkpoint at {checkpoint.attempted_rows} rows",
            extra={"job_id": state.job_id, "resume_state": checkpoint.resume_state}
        )
        return checkpoint

    async def _save_checkpoint(
        self,
        request: StreamingEtlRequest,
        state: RunState,
        source: RowSource,
        plan: List[ColumnPlanItem],
    ) -> None:
        if self.checkpoints is None:
            return
        resume_state = source.resume_state
        await self.checkpoints.save(CheckpointState(
            job_id=state.job_id,
            table=state.table,
            source_type=request.source_type,
            attempted_rows=state.attempted,
            inserted_rows=state.inserted,
            rejected_rows=state.rejected,
            resume_state=resume_state,
            column_plan=list(plan),
        ))
        self.registry.set_checkpoint(state.job_id, resume_state)

    def _report_progress(self, state: RunState, dead_letters: Optional[DeadLetterCollector]) -> None:
        self.registry.update_progress(
            state.job_id,
            attempted_rows=state.attempted,
            inserted_rows=state.inserted,
            rejected_rows=state.rejected,
            dead_letter_count=dead_letters.total_count if dead_letters else 0,
        )
        logger.debug(
            f"Job {state.job_id} progress: attempted={state.attempted} "
            f"inserted={state.inserted} rejected={state.rejected}"
        )

    def _report_committed(self, state: RunState, dead_letters: Optional[DeadLetterCollector]) -> None:
        """Replace live progress with the counts that survived the rollback of the open segment."""
        self.registry.update_progress(
            state.job_id,
            attempted_rows=state.committed_attempted,
            inserted_rows=state.committed_inserted,
            rejected_rows=state.committed_rejected,
            dead_letter_count=dead_letters.total_count if dead_letters else 0,
        )

    def _result(
        self,
        state: RunState,
        dead_letters: Optional[DeadLetterCollector],
        dead_letter_path: Optional[str],
        heap_guard: HeapGuard,
        status: str,
    ) -> StreamingEtlResult:
        duration_ms = int(state.elapsed_ms)
        rows_per_second = round(state.committed_inserted * 1000 / duration_ms, 2) if duration_ms > 0 else 0.0
        return StreamingEtlResult(
            job_id=state.job_id,
            table=state.table,
            source_type=state.source_type,
            status=status,
            columns=state.columns,
            attempted_rows=state.committed_attempted,
            inserted_rows=state.committed_inserted,
            rejected_rows=state.committed_rejected,
            rolled_back_rows=state.rolled_back,
            conflict_skipped_rows=state.conflict_skipped,
            dead_letter_count=dead_letters.total_count if dead_letters else 0,
            dead_letter_path=dead_letter_path,
            checkpoint_resumed=state.resumed,
            duration_ms=duration_ms,
            rows_per_second=rows_per_second,
            peak_memory_mb=round(heap_guard.peak_mb, 2) if heap_guard.peak_mb else None,
        )

    def _record_metrics(self, result: StreamingEtlResult, status: str, reason: Optional[str] = None) -> None:
        self.metrics.record_run(
            job_id=result.job_id,
            table=result.table,
            status=status,
            duration_ms=result.duration_ms,
            inserted_rows=result.inserted_rows,
            rejected_rows=result.rejected_rows,
            rows_per_second=result.rows_per_second,
            peak_memory_mb=result.peak_memory_mb,
            reason=reason,
        )

    async def _flush_quietly(self, dead_letters: Optional[DeadLetterCollector]) -> Optional[str]:
        if dead_letters is None:
            return None
        try:
            return await dead_letters.flush()
        except OSError as e:
            logger.error(f"Failed to flush dead letters to {dead_letters.path}: {e}")
            return None

    async def _handle_failure(
        self,
        error: ETLException,
        state: RunState,
        dead_letters: Optional[DeadLetterCollector],
        heap_guard: HeapGuard,
    ) -> None:
        """Record a failed run everywhere and attach the partial counts to ``error``."""
        logger.error(
            f"Streaming ETL job {state.job_id} failed ({error.reason}): {error.message}",
            extra={"error_context": error.to_dict()}
        )
        self._report_committed(state, dead_letters)
        self.registry.fail(state.job_id, error.reason)

        if self.failures is not None:
            try:
                await self.failures.record(
                    job_id=state.job_id,
                    stage=failure_stage(error),
                    table=state.table,
                    approx_row=state.attempted,
                    error_code=error.reason,
                    error_message=error.message,
                )
            except Exception as e:
                logger.error(f"Failed to record failure for job {state.job_id}: {e}")

        dead_letter_path = await self._flush_quietly(dead_letters)
        result = self._result(state, dead_letters, dead_letter_path, heap_guard, "completed")
        self._record_metrics(result, "failed", error.reason)

        partial = result.model_dump(by_alias=True, mode="json")
        partial.pop("status")
        error.partial_result = partial


def failure_stage(error: ETLException) -> str:
    """Pipeline stage recorded in the failure log."""
    if isinstance(error, (InvalidRequestError, ExtractionError)):
        return "extract"
    if isinstance(error, TransformationError):
        return "transform"
    if isinstance(error, ResourceLimitError):
        return "limit"
    return "copy"


async def _prepend(first: Dict[str, Any], rest: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
    yield first
    async for record in rest:
        yield record
