from __future__ import annotations
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..findings import DiagnosisResult
from .base import DiagnosisEngine, DiagnosisEngineError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
DEFAULT_CALL_TIMEOUT = 60.0
POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class DiagnosisJob:
    key: Any
    image_bytes: bytes
    context: Dict[str, Any] = field(default_factory=dict)


def call_engine(engine: DiagnosisEngine, job: DiagnosisJob) -> DiagnosisResult:
    """One engine call; every failure comes back as a not-ok result."""
    try:
        result = engine.diagnose(job.image_bytes, job.context)
    except DiagnosisEngineError as e:
        logger.warning("%s failed on %s: %s", engine.name, job.key, e)
        return DiagnosisResult.failure(e.reason)
    except Exception as e:
        logger.warning("%s raised on %s: %r", engine.name, job.key, e)
        return DiagnosisResult.failure("diagnosis_threw")
    if not isinstance(result, DiagnosisResult):
        return DiagnosisResult.failure("invalid_payload")
    return result


def run_diagnosis_jobs(
    engine: DiagnosisEngine,
    jobs: Sequence[DiagnosisJob],
    max_workers: int = DEFAULT_MAX_WORKERS,
    call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT,
) -> List[DiagnosisResult]:
    """
    Run jobs on at most ``max_workers`` concurrent calls; results come back in
    job order.

    Each worker slot is a single-thread executor and a job is only handed to an
    idle slot, so its clock starts when it starts running. A call still running
    ``call_timeout`` seconds later is recorded as a ``timeout`` failure and its
    slot is replaced with a fresh executor: the hung thread is abandoned and the
    jobs behind it keep going. Nothing is retried.
    """
    if not jobs:
        return []
    results: Dict[int, DiagnosisResult] = {}
    n_slots = max(1, min(int(max_workers), len(jobs)))
    slots = [ThreadPoolExecutor(max_workers=1) for _ in range(n_slots)]
    running: Dict[int, Tuple[Future, int, float]] = {}   # slot -> (future, job index, start)
    next_job = 0
    try:
        while next_job < len(jobs) or running:
            for slot in range(n_slots):
                if slot not in running and next_job < len(jobs):
                    fut = slots[slot].submit(call_engine, engine, jobs[next_job])
                    running[slot] = (fut, next_job, time.monotonic())
                    next_job += 1
            wait([fut for fut, _, _ in running.values()], timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
            now = time.monotonic()
            for slot, (fut, idx, t0) in list(running.items()):
                if fut.done():
                    results[idx] = fut.result()
                    del running[slot]
                elif call_timeout is not None and now - t0 > call_timeout:
                    logger.warning("%s timed out on %s after %.1fs", engine.name, jobs[idx].key, call_timeout)
                    results[idx] = DiagnosisResult.failure("timeout")
                    del running[slot]
                    slots[slot].shutdown(wait=False)
                    slots[slot] = ThreadPoolExecutor(max_workers=1)
    finally:
        # timed-out calls may still be running; do not block on them
        for executor in slots:
            executor.shutdown(wait=False, cancel_futures=True)
    return [results[i] for i in range(len(jobs))]
