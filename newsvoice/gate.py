# newsvoice/gate.py
"""
Inference gate: the only path to the model backend.

The backend accepts one caller at a time, so every model call becomes an
InferenceJob on a priority heap drained by a single worker task. Execution runs
on a one-thread executor owned by the gate; a job abandoned at its deadline
keeps that thread busy until the backend returns, so two executions can never
overlap even when callers give up.

Ordering: strict priority across bands (INTERACTIVE < SYNTHESIS < BATCH), FIFO
inside a band.
"""
from __future__ import annotations

from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Callable, Deque, Dict, List, Optional, Tuple
import asyncio
import heapq
import itertools
import time

from .backend import ModelBackend, Prompt
from .config import (
    GATE_HISTORY_SIZE,
    GATE_MAX_QUEUE_DEPTH,
    GATE_TIMEOUT_BATCH_S,
    GATE_TIMEOUT_INTERACTIVE_S,
    GATE_TIMEOUT_SYNTHESIS_S,
)
from .errors import JobCancelled, ModelExecutionFailure, ModelQueueTimeout
from .logging_setup import get_logger

logger = get_logger("newsvoice.gate")


class Priority(IntEnum):
    INTERACTIVE = 0
    SYNTHESIS = 1
    BATCH = 2


DEFAULT_TIMEOUTS: Dict[Priority, float] = {
    Priority.INTERACTIVE: GATE_TIMEOUT_INTERACTIVE_S,
    Priority.SYNTHESIS: GATE_TIMEOUT_SYNTHESIS_S,
    Priority.BATCH: GATE_TIMEOUT_BATCH_S,
}


@dataclass(eq=False)
class InferenceJob:
    priority: Priority
    stage: str
    payload: Prompt
    deadline: float                      # time.monotonic() based
    result_future: "asyncio.Future[str]"
    seq: int
    enqueued_at: float
    on_token: Optional[Callable[[str], None]] = None
    state: str = "queued"                # queued | running | done | cancelled | expired | rejected
    expiry: Optional[asyncio.TimerHandle] = None

    async def result(self) -> str:
        return await self.result_future


@dataclass(frozen=True)
class JobRecord:
    seq: int
    stage: str
    priority: str
    outcome: str                 # ok | error | expired | deadline | cancelled | shed | rejected
    wait_ms: float
    exec_ms: Optional[float] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None


class InferenceGate:
    def __init__(
        self,
        backend: ModelBackend,
        max_queue_depth: int = GATE_MAX_QUEUE_DEPTH,
        timeouts: Optional[Dict[Priority, float]] = None,
        history_size: int = GATE_HISTORY_SIZE,
    ):
        self._backend = backend
        self.max_queue_depth = max_queue_depth
        self._timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self._heap: List[Tuple[int, int, InferenceJob]] = []
        self._queued = 0
        self._seq = itertools.count()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._running: Optional[InferenceJob] = None
        self._outcomes: Counter = Counter()
        self.records: Deque[JobRecord] = deque(maxlen=history_size)
        self.invocations = 0

    @property
    def model_version(self) -> str:
        return getattr(self._backend, "model_version", "unknown")

    # ---------- public API ----------

    def start(self) -> None:
        self._ensure_worker()

    async def submit(
        self,
        stage: str,
        prompt: Prompt,
        priority: Priority = Priority.BATCH,
        timeout: Optional[float] = None,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Queue a model call and wait for its text. Raises the errors taxonomy only."""
        job = self.enqueue(stage, prompt, priority, timeout, on_token)
        try:
            return await asyncio.shield(job.result_future)
        except asyncio.CancelledError:
            # Caller went away: drop the job if it has not started yet
            self.cancel(job)
            raise

    def enqueue(
        self,
        stage: str,
        prompt: Prompt,
        priority: Priority = Priority.BATCH,
        timeout: Optional[float] = None,
        on_token: Optional[Callable[[str], None]] = None,
    ) -> InferenceJob:
        loop = self._ensure_worker()
        priority = Priority(priority)
        now = time.monotonic()
        timeout = self._timeouts[priority] if timeout is None else timeout
        job = InferenceJob(
            priority=priority,
            stage=stage,
            payload=prompt,
            deadline=now + timeout,
            result_future=loop.create_future(),
            seq=next(self._seq),
            enqueued_at=now,
            on_token=on_token,
        )
        if self._queued >= self.max_queue_depth and not self._shed_for(job, now):
            job.state = "rejected"
            self._fail(job, ModelQueueTimeout("inference queue full", phase="queued",
                                              stage=stage, queue_depth=self._queued))
            self._record(job, "rejected", now)
            return job

        self.invocations += 1
        heapq.heappush(self._heap, (int(priority), job.seq, job))
        self._queued += 1
        # A queued job fails at its deadline, not when the worker reaches it
        job.expiry = loop.call_later(max(timeout, 0.0), self._expire_queued, job)
        self._wakeup.set()
        return job

    def cancel(self, job: InferenceJob) -> bool:
        """Remove a still-queued job. Running jobs cannot be preempted."""
        if job.state != "queued":
            return False
        job.state = "cancelled"
        self._queued -= 1
        self._disarm(job)
        self._fail(job, JobCancelled(f"{job.stage} job cancelled before execution", stage=job.stage))
        self._record(job, "cancelled", time.monotonic())
        return True

    async def close(self) -> None:
        for _, _, job in self._heap:
            if job.state == "queued":
                self.cancel(job)
        self._heap.clear()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._executor.shutdown(wait=False, cancel_futures=True)

    def queue_depth(self) -> int:
        return self._queued

    def stats(self) -> Dict[str, object]:
        return {
            "queued": self._queued,
            "running": self._running.stage if self._running else None,
            "invocations": self.invocations,
            "outcomes": dict(self._outcomes),
            "model_version": self.model_version,
        }

    # ---------- internals ----------

    def _ensure_worker(self) -> asyncio.AbstractEventLoop:
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done() or self._loop is not loop:
            self._loop = loop
            self._wakeup = asyncio.Event()
            if self._heap:
                self._wakeup.set()
            self._worker = loop.create_task(self._run(), name="inference-gate")
        return loop

    def _shed_for(self, incoming: InferenceJob, now: float) -> bool:
        # Expire one queued job of a strictly lower band: lowest band first, earliest deadline first
        victims = [j for _, _, j in self._heap if j.state == "queued" and j.priority > incoming.priority]
        if not victims:
            return False
        victim = min(victims, key=lambda j: (-int(j.priority), j.deadline, j.seq))
        victim.state = "expired"
        self._queued -= 1
        self._disarm(victim)
        self._fail(victim, ModelQueueTimeout("shed from full inference queue", phase="queued",
                                             stage=victim.stage, shed_for=incoming.stage))
        self._record(victim, "shed", now)
        logger.warning("INFERENCE_JOB_SHED", extra={"stage": victim.stage, "priority": victim.priority.name,
                                                    "incoming_stage": incoming.stage})
        return True

    def _pop_next(self) -> Optional[InferenceJob]:
        while self._heap:
            _, _, job = heapq.heappop(self._heap)
            if job.state == "queued":
                self._queued -= 1
                self._disarm(job)
                return job
        return None

    @staticmethod
    def _disarm(job: InferenceJob) -> None:
        if job.expiry is not None:
            job.expiry.cancel()
            job.expiry = None

    def _expire_queued(self, job: InferenceJob) -> None:
        job.expiry = None
        if job.state != "queued":
            return
        now = time.monotonic()
        job.state = "expired"
        self._queued -= 1
        self._fail(job, ModelQueueTimeout(phase="queued", stage=job.stage,
                                          waited_ms=round((now - job.enqueued_at) * 1000)))
        self._record(job, "expired", now)

    async def _run(self) -> None:
        while True:
            job = self._pop_next()
            if job is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            try:
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # _execute resolves the job itself; keep draining whatever happened
                logger.exception("GATE_WORKER_ERROR", extra={"stage": job.stage})
                if not job.result_future.done():
                    self._fail(job, ModelExecutionFailure("gate worker error", stage=job.stage))

    async def _execute(self, job: InferenceJob) -> None:
        now = time.monotonic()
        if now >= job.deadline:
            job.state = "expired"
            self._fail(job, ModelQueueTimeout(phase="queued", stage=job.stage,
                                              waited_ms=round((now - job.enqueued_at) * 1000)))
            self._record(job, "expired", now)
            return

        job.state = "running"
        self._running = job
        loop = asyncio.get_running_loop()
        times: Dict[str, float] = {}

        def call() -> str:
            times["started"] = time.monotonic()
            try:
                stream = getattr(self._backend, "stream", None)
                if job.on_token is not None and stream is not None:
                    parts = []
                    for token in stream(job.payload):
                        parts.append(token)
                        loop.call_soon_threadsafe(job.on_token, token)
                    return "".join(parts)
                return self._backend.complete(job.payload)
            finally:
                times["finished"] = time.monotonic()

        outcome, error = "ok", None
        try:
            text = await asyncio.wait_for(asyncio.wrap_future(self._executor.submit(call)),
                                          timeout=job.deadline - now)
        except asyncio.TimeoutError:
            # Caller is treated as disconnected; the backend call finishes on its own and is discarded
            outcome, error = "deadline", "ModelQueueTimeout"
            self._fail(job, ModelQueueTimeout(phase="executing", stage=job.stage))
        except asyncio.CancelledError:
            # Gate shutting down mid-execution
            self._fail(job, JobCancelled("inference gate closed", stage=job.stage))
            raise
        except Exception as exc:
            outcome, error = "error", type(exc).__name__
            failure = ModelExecutionFailure(f"backend error during {job.stage}: {type(exc).__name__}",
                                            stage=job.stage, backend_error=type(exc).__name__)
            failure.__cause__ = exc
            self._fail(job, failure)
        else:
            if not job.result_future.done():
                job.result_future.set_result(text or "")
        finally:
            job.state = "expired" if outcome == "deadline" else "done"
            self._running = None

        self._record(job, outcome, now, times.get("started"), times.get("finished"), error)

    def _fail(self, job: InferenceJob, exc: Exception) -> None:
        if not job.result_future.done():
            job.result_future.set_exception(exc)
            # Mark retrieved so an unawaited failed job doesn't warn at GC
            job.result_future.exception()

    def _record(
        self,
        job: InferenceJob,
        outcome: str,
        dequeued_at: float,
        started_at: Optional[float] = None,
        finished_at: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        exec_ms = None
        if started_at is not None and finished_at is not None:
            exec_ms = round((finished_at - started_at) * 1000, 2)
        record = JobRecord(
            seq=job.seq,
            stage=job.stage,
            priority=job.priority.name,
            outcome=outcome,
            wait_ms=round((dequeued_at - job.enqueued_at) * 1000, 2),
            exec_ms=exec_ms,
            started_at=started_at,
            finished_at=finished_at,
            error=error,
        )
        self.records.append(record)
        self._outcomes[outcome] += 1
        level = 20 if outcome in ("ok", "cancelled") else 30
        logger.log(level, "INFERENCE_JOB", extra=asdict(record))
