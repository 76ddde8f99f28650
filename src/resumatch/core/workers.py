from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from sqlalchemy.orm import Session, sessionmaker

from resumatch.config import Settings, get_settings
from resumatch.core import units
from resumatch.core.ratelimit import is_rate_limit_error
from resumatch.db.models import Candidate, JobDescription, QueueItem, QueueKind, QueueStatus, Resume
from resumatch.db.queue import RetryQueue
from resumatch.db.repositories import Repository
from resumatch.db.session import SessionLocal
from resumatch.errors import ReferencedEntityMissing
from resumatch.llm.client import InferenceClient

logger = logging.getLogger(__name__)

ItemOutcome = Literal["succeeded", "requeued", "dormant", "removed"]


@dataclass(frozen=True, slots=True)
class QueueItemSnapshot:
    id: int
    kind: QueueKind
    owner_id: int
    related_id: int
    attempt_count: int
    status: QueueStatus
    last_error: str | None = None

    @classmethod
    def of(cls, item: QueueItem) -> QueueItemSnapshot:
        return cls(
            id=item.id,
            kind=QueueKind(item.kind),
            owner_id=item.owner_id,
            related_id=item.related_id,
            attempt_count=item.attempt_count,
            status=QueueStatus(item.status),
            last_error=item.last_error,
        )


@dataclass(slots=True)
class CycleReport:
    kind: QueueKind
    eligible: int = 0
    succeeded: int = 0
    requeued: int = 0
    dormant: int = 0
    removed: int = 0
    total_ms: float = 0.0
    prefetch_ms: float = 0.0
    inference_ms: list[float] = field(default_factory=list)

    @property
    def inference_avg_ms(self) -> float:
        return sum(self.inference_ms) / len(self.inference_ms) if self.inference_ms else 0.0

    @property
    def inference_min_ms(self) -> float:
        return min(self.inference_ms, default=0.0)

    @property
    def inference_max_ms(self) -> float:
        return max(self.inference_ms, default=0.0)


@dataclass(slots=True)
class _ItemResult:
    outcome: ItemOutcome
    inference_ms: float | None = None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


DormantHook = Callable[[QueueItemSnapshot], None]


class QueueWorker:
    """
    Background retry loop for one queue kind.

    ``start()`` runs a cycle immediately and then one every poll interval on a
    daemon thread. A cycle fetches every eligible row, prefetches the entities
    the rows point at, and processes the rows in parallel, each on its own
    session. Cycles of the same worker never overlap.
    """

    kind: ClassVar[QueueKind]

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session] | None = None,
        client: InferenceClient | None = None,
        settings: Settings | None = None,
        on_dormant: DormantHook | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or SessionLocal
        self._client = client
        self.on_dormant = on_dormant
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def client(self) -> InferenceClient:
        if self._client is None:
            self._client = InferenceClient(self.settings)
        return self._client

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"{self.kind.value}-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Started %s worker (poll every %ss, max %s attempts)",
            self.kind.value,
            self.settings.worker_poll_interval_sec,
            self.settings.worker_max_attempts,
        )

    def signal_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread to exit; True when it did."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            return False
        self._thread = None
        return True

    def stop(self, timeout: float | None = None) -> bool:
        self.signal_stop()
        finished = self.join(timeout)
        if finished:
            logger.info("Stopped %s worker", self.kind.value)
        else:
            logger.warning("%s worker still finishing a cycle after %ss", self.kind.value, timeout)
        return finished

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("%s worker cycle crashed", self.kind.value)
            self._stop_event.wait(self.settings.worker_poll_interval_sec)

    def tick(self) -> CycleReport | None:
        """Run one cycle now. Returns None when a cycle is already in flight."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Skipping %s cycle, previous one still running", self.kind.value)
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        started = time.perf_counter()
        report = CycleReport(kind=self.kind)

        with self.session_factory() as session:
            items = [QueueItemSnapshot.of(item) for item in RetryQueue(session, self.settings).get_eligible(self.kind)]
            report.eligible = len(items)
            if not items:
                report.total_ms = _elapsed_ms(started)
                return report

            logger.info("Processing %s %s queue item(s) in parallel", len(items), self.kind.value)
            prefetch_started = time.perf_counter()
            context = self.prefetch(session, items)
            report.prefetch_ms = _elapsed_ms(prefetch_started)

        with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix=f"{self.kind.value}-item") as pool:
            results = list(pool.map(lambda item: self._process_item(item, context), items))

        for result in results:
            setattr(report, result.outcome, getattr(report, result.outcome) + 1)
            if result.inference_ms is not None:
                report.inference_ms.append(result.inference_ms)
        report.total_ms = _elapsed_ms(started)

        logger.info(
            "%s cycle complete: %s succeeded, %s requeued, %s dormant, %s removed",
            self.kind.value,
            report.succeeded,
            report.requeued,
            report.dormant,
            report.removed,
        )
        logger.info(
            "%s cycle timing: total=%.0fms prefetch=%.0fms inference avg=%.0fms min=%.0fms max=%.0fms",
            self.kind.value,
            report.total_ms,
            report.prefetch_ms,
            report.inference_avg_ms,
            report.inference_min_ms,
            report.inference_max_ms,
        )
        return report

    def _process_item(self, item: QueueItemSnapshot, context: dict[str, Any]) -> _ItemResult:
        with self.session_factory() as session:
            queue = RetryQueue(session, self.settings)
            repo = Repository(session, self.settings)
            timer: dict[str, float] = {}
            try:
                self.process(repo, queue, item, context, timer)
            except ReferencedEntityMissing as exc:
                session.rollback()
                logger.warning("Removing %s queue item %s: %s", self.kind.value, item.id, exc)
                queue.record_success(item.id)
                return _ItemResult("removed", timer.get("inference_ms"))
            except Exception as exc:
                session.rollback()
                status = queue.record_failure(item.id, exc, self.settings.worker_max_attempts)
                if is_rate_limit_error(exc):
                    logger.warning("%s item %s rate limited again: %s", self.kind.value, item.id, exc)
                else:
                    logger.error("%s item %s failed: %s", self.kind.value, item.id, exc)

                if status == QueueStatus.DORMANT:
                    self._notify_dormant(queue, item.id)
                    return _ItemResult("dormant", timer.get("inference_ms"))
                return _ItemResult("requeued", timer.get("inference_ms"))
            return _ItemResult("succeeded", timer.get("inference_ms"))

    def _notify_dormant(self, queue: RetryQueue, item_id: int) -> None:
        row = queue.get_item(item_id)
        if row is None:
            return
        snapshot = QueueItemSnapshot.of(row)
        logger.error(
            "%s item %s (owner=%s related=%s) went dormant after %s attempts: %s",
            snapshot.kind.value,
            snapshot.id,
            snapshot.owner_id,
            snapshot.related_id,
            snapshot.attempt_count,
            snapshot.last_error,
        )
        if self.on_dormant is None:
            return
        try:
            self.on_dormant(snapshot)
        except Exception:
            logger.exception("on_dormant hook failed for %s item %s", snapshot.kind.value, snapshot.id)

    def _infer(self, timer: dict[str, float], call: Callable[[], Any]) -> Any:
        started = time.perf_counter()
        try:
            return call()
        finally:
            timer["inference_ms"] = _elapsed_ms(started)

    def prefetch(self, session: Session, items: list[QueueItemSnapshot]) -> dict[str, Any]:
        raise NotImplementedError

    def process(
        self,
        repo: Repository,
        queue: RetryQueue,
        item: QueueItemSnapshot,
        context: dict[str, Any],
        timer: dict[str, float],
    ) -> None:
        raise NotImplementedError


class ExtractionWorker(QueueWorker):
    kind = QueueKind.EXTRACTION

    def prefetch(self, session: Session, items: list[QueueItemSnapshot]) -> dict[str, Any]:
        repo = Repository(session, self.settings)
        resume_ids = [item.owner_id for item in items]
        return {
            "resumes": {resume.id: resume for resume in repo.get_resumes_by_ids(resume_ids)},
            "candidates": {c.resume_id: c for c in repo.get_candidates_by_resume_ids(resume_ids)},
        }

    def process(self, repo, queue, item, context, timer) -> None:
        resume: Resume | None = context["resumes"].get(item.owner_id)
        if resume is None:
            raise ReferencedEntityMissing("resume", item.owner_id)

        if item.owner_id not in context["candidates"]:
            info = self._infer(timer, lambda: self.client.extract_candidate(resume.content))
            candidate = units.store_candidate(repo, resume.id, info)
            logger.info("Extracted candidate %s for resume %s", candidate.id, resume.id)
        queue.record_success(item.id)


class AnonymizationWorker(QueueWorker):
    kind = QueueKind.ANONYMIZATION

    def prefetch(self, session: Session, items: list[QueueItemSnapshot]) -> dict[str, Any]:
        repo = Repository(session, self.settings)
        return {"resumes": {r.id: r for r in repo.get_resumes_by_ids(item.owner_id for item in items)}}

    def process(self, repo, queue, item, context, timer) -> None:
        resume: Resume | None = context["resumes"].get(item.owner_id)
        if resume is None:
            raise ReferencedEntityMissing("resume", item.owner_id)

        if resume.public_resume_html is None:
            html = self._infer(timer, lambda: self.client.anonymize_resume(resume.content))
            units.store_public_html(repo, resume.id, html)
        queue.record_success(item.id)


class AnalysisWorker(QueueWorker):
    kind = QueueKind.ANALYSIS

    def prefetch(self, session: Session, items: list[QueueItemSnapshot]) -> dict[str, Any]:
        repo = Repository(session, self.settings)
        return {"jobs": {j.id: j for j in repo.get_job_descriptions_by_ids(item.owner_id for item in items)}}

    def process(self, repo, queue, item, context, timer) -> None:
        job: JobDescription | None = context["jobs"].get(item.owner_id)
        if job is None:
            raise ReferencedEntityMissing("job description", item.owner_id)

        if job.analyzed_at is None:
            skills = self._infer(timer, lambda: self.client.analyze_job(job.title, job.description))
            units.store_required_skills(repo, job.id, skills)
            logger.info("Analyzed job description %s: %s skills", job.id, len(skills))
        queue.record_success(item.id)


class MatchWorker(QueueWorker):
    kind = QueueKind.MATCH

    def prefetch(self, session: Session, items: list[QueueItemSnapshot]) -> dict[str, Any]:
        repo = Repository(session, self.settings)
        candidates = {c.id: c for c in repo.get_candidates_by_ids(item.owner_id for item in items)}
        jobs = {j.id: j for j in repo.get_job_descriptions_by_ids(item.related_id for item in items)}
        resumes = {r.id: r for r in repo.get_resumes_by_ids(c.resume_id for c in candidates.values())}

        pairs = []
        for item in items:
            candidate = candidates.get(item.owner_id)
            job = jobs.get(item.related_id)
            resume = resumes.get(candidate.resume_id) if candidate is not None else None
            if resume is not None and job is not None:
                pairs.append((resume.content_hash, job.content_hash))
        cached = {
            (row.resume_content_hash, row.job_content_hash)
            for row in repo.get_match_results_by_fingerprint_pairs(pairs)
        }
        return {"candidates": candidates, "jobs": jobs, "resumes": resumes, "cached": cached}

    def process(self, repo, queue, item, context, timer) -> None:
        candidate: Candidate | None = context["candidates"].get(item.owner_id)
        if candidate is None:
            raise ReferencedEntityMissing("candidate", item.owner_id)
        job: JobDescription | None = context["jobs"].get(item.related_id)
        if job is None:
            raise ReferencedEntityMissing("job description", item.related_id)
        resume: Resume | None = context["resumes"].get(candidate.resume_id)
        if resume is None:
            raise ReferencedEntityMissing("resume", candidate.resume_id)

        if (resume.content_hash, job.content_hash) in context["cached"]:
            queue.record_success(item.id)
            return

        data = units.ScoringInput.build(candidate, resume, job)
        result = self._infer(timer, lambda: units.score(self.client, data))
        row = units.match_row(result, resume_hash=resume.content_hash, job=job, candidate_id=candidate.id)
        stored = repo.create_match_result_and_complete_queue_item(row, item.id)
        logger.info(
            "Scored candidate %s for job %s: %s",
            candidate.id,
            job.id,
            stored.match_score,
        )


WORKER_TYPES: tuple[type[QueueWorker], ...] = (
    ExtractionWorker,
    AnonymizationWorker,
    AnalysisWorker,
    MatchWorker,
)


class WorkerPool:
    """One worker per queue kind, started and stopped together or one at a time."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session] | None = None,
        client: InferenceClient | None = None,
        settings: Settings | None = None,
        on_dormant: DormantHook | None = None,
    ):
        self.settings = settings or get_settings()
        self.workers: dict[QueueKind, QueueWorker] = {
            worker_type.kind: worker_type(
                session_factory=session_factory,
                client=client,
                settings=self.settings,
                on_dormant=on_dormant,
            )
            for worker_type in WORKER_TYPES
        }

    def get(self, kind: QueueKind | str) -> QueueWorker:
        return self.workers[QueueKind(kind)]

    def start(self, kind: QueueKind | str) -> None:
        self.get(kind).start()

    def stop(self, kind: QueueKind | str, timeout: float | None = None) -> bool:
        return self.get(kind).stop(timeout)

    def start_all(self) -> None:
        for worker in self.workers.values():
            worker.start()

    def stop_all(self, grace_sec: float | None = None) -> bool:
        """
        Signal every worker, then wait up to ``grace_sec`` overall for
        in-flight cycles. Returns False when a cycle was abandoned.
        """
        grace = self.settings.shutdown_grace_sec if grace_sec is None else grace_sec
        for worker in self.workers.values():
            worker.signal_stop()

        deadline = time.monotonic() + grace
        finished = True
        for worker in self.workers.values():
            remaining = max(0.0, deadline - time.monotonic())
            if not worker.join(remaining):
                finished = False

        if finished:
            logger.info("All queue workers stopped")
        else:
            logger.error("Forced shutdown after %ss with worker cycles still running", grace)
        return finished

    def is_running(self, kind: QueueKind | str) -> bool:
        return self.get(kind).is_running
