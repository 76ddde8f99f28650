from __future__ import annotations

import threading
import time

from sqlalchemy import delete, func, select, update

from resumatch.core.workers import (
    AnalysisWorker,
    ExtractionWorker,
    MatchWorker,
    QueueItemSnapshot,
    WorkerPool,
)
from resumatch.db.models import JobDescription, MatchResult, QueueItem, QueueKind, QueueStatus, Resume
from resumatch.db.queue import RetryQueue
from resumatch.db.repositories import Repository
from resumatch.db.session import SessionLocal
from resumatch.errors import TransientQuotaError
from resumatch.types import CandidateInfo, JobDescriptionInput, ResumeUpload


def _resume(db, data: bytes = b"resume-bytes") -> Resume:
    resume, _ = Repository(db).get_or_create_by_fingerprint(
        "resume", ResumeUpload(file_name="cv.pdf", data=data, text="Python engineer")
    )
    return resume


def _job(db) -> JobDescription:
    job, _ = Repository(db).get_or_create_by_fingerprint(
        "job", JobDescriptionInput(title="Backend", description="Python and SQL")
    )
    return job


def _make_due(db) -> None:
    db.execute(update(QueueItem).values(next_retry_at=None))
    db.commit()


def test_extraction_worker_creates_candidate_and_deletes_row(fake_client, settings) -> None:
    with SessionLocal() as db:
        resume_id = _resume(db).id
        RetryQueue(db).enqueue(QueueKind.EXTRACTION, resume_id)

    report = ExtractionWorker(SessionLocal, fake_client, settings).tick()

    assert report.eligible == 1
    assert report.succeeded == 1
    assert len(report.inference_ms) == 1
    with SessionLocal() as db:
        repo = Repository(db)
        assert repo.get_candidate_by_resume_id(resume_id).first_name == "Ada"
        assert RetryQueue(db).list_items() == []


def test_worker_removes_rows_whose_entity_vanished(fake_client, settings) -> None:
    with SessionLocal() as db:
        job = _job(db)
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, job.id)
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, 4242)
        db.execute(delete(JobDescription).where(JobDescription.id == job.id))
        db.commit()

    report = AnalysisWorker(SessionLocal, fake_client, settings).tick()

    assert report.removed == 2
    assert report.succeeded == 0
    assert fake_client.calls["analyze_job"] == 0
    with SessionLocal() as db:
        assert RetryQueue(db).list_items() == []


def test_failures_back_off_then_go_dormant_and_fire_hook(fake_client, settings) -> None:
    fake_client.fail_always("analyze_job", TransientQuotaError("Rate limit reached"))
    dormant = []
    with SessionLocal() as db:
        job = _job(db)
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, job.id)

    worker = AnalysisWorker(SessionLocal, fake_client, settings, on_dormant=dormant.append)
    reports = []
    for _ in range(settings.worker_max_attempts):
        reports.append(worker.tick())
        with SessionLocal() as db:
            _make_due(db)

    assert [r.requeued for r in reports] == [1] * (settings.worker_max_attempts - 1) + [0]
    assert reports[-1].dormant == 1
    assert len(dormant) == 1
    assert dormant[0].attempt_count == settings.worker_max_attempts
    assert dormant[0].status == QueueStatus.DORMANT

    with SessionLocal() as db:
        row = RetryQueue(db).list_items()[0]
        assert row.status == QueueStatus.DORMANT
        assert row.last_error == "Rate limit reached"


def test_unclassified_error_counts_as_an_attempt(fake_client, settings) -> None:
    fake_client.fail("extract_candidate", ValueError("model returned garbage"))
    with SessionLocal() as db:
        resume_id = _resume(db).id
        RetryQueue(db).enqueue(QueueKind.EXTRACTION, resume_id)

    report = ExtractionWorker(SessionLocal, fake_client, settings).tick()

    assert report.requeued == 1
    with SessionLocal() as db:
        row = RetryQueue(db).list_items()[0]
        assert row.status == QueueStatus.RETRY_SCHEDULED
        assert row.attempt_count == 1
        assert Repository(db).get_candidate_by_resume_id(resume_id) is None


def test_match_worker_scores_once_and_skips_cached_pairs(fake_client, settings) -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        job = _job(db)
        first = repo.create_candidate(_resume(db, b"one").id, CandidateInfo(first_name="A", last_name="One"))
        second = repo.create_candidate(_resume(db, b"two").id, CandidateInfo(first_name="B", last_name="Two"))
        first_id, second_id, job_id = first.id, second.id, job.id
        queue = RetryQueue(db)
        queue.enqueue(QueueKind.MATCH, first_id, job_id)
        queue.enqueue(QueueKind.MATCH, second_id, job_id)

    worker = MatchWorker(SessionLocal, fake_client, settings)
    report = worker.tick()
    assert report.succeeded == 2
    assert fake_client.calls["score_match"] == 2

    with SessionLocal() as db:
        RetryQueue(db).enqueue(QueueKind.MATCH, first_id, job_id)
    report = worker.tick()

    assert report.succeeded == 1
    assert fake_client.calls["score_match"] == 2
    with SessionLocal() as db:
        assert db.scalar(select(func.count(MatchResult.id))) == 2
        assert RetryQueue(db).list_items() == []


def test_overlapping_tick_is_skipped(fake_client, settings) -> None:
    release = threading.Event()
    entered = threading.Event()

    def slow_analyze(title: str, description: str) -> list[str]:
        entered.set()
        release.wait(5)
        return ["Python"]

    fake_client.analyze_job = slow_analyze
    with SessionLocal() as db:
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, _job(db).id)

    worker = AnalysisWorker(SessionLocal, fake_client, settings)
    results = []
    background = threading.Thread(target=lambda: results.append(worker.tick()))
    background.start()
    assert entered.wait(5)

    assert worker.tick() is None

    release.set()
    background.join(5)
    assert results[0].succeeded == 1


def test_pool_start_runs_first_cycle_immediately_and_stops(fake_client, settings) -> None:
    with SessionLocal() as db:
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, _job(db).id)

    pool = WorkerPool(SessionLocal, fake_client, settings)
    pool.start(QueueKind.ANALYSIS)
    try:
        deadline = time.monotonic() + 5
        while fake_client.calls["analyze_job"] == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert pool.is_running(QueueKind.ANALYSIS)
        assert not pool.is_running(QueueKind.MATCH)
    finally:
        assert pool.stop_all(grace_sec=5) is True

    assert not pool.is_running(QueueKind.ANALYSIS)
    assert fake_client.calls["analyze_job"] == 1


def _selects(statements: list[str]) -> int:
    return sum(1 for statement in statements if statement.lstrip().upper().startswith("SELECT"))


def _enqueue_matches(count: int, offset: int = 0) -> int:
    with SessionLocal() as db:
        repo = Repository(db)
        job_id = _job(db).id
        for n in range(offset, offset + count):
            resume = _resume(db, f"resume-{n}".encode())
            candidate = repo.create_candidate(resume.id, CandidateInfo(first_name="C", last_name=str(n)))
            RetryQueue(db).enqueue(QueueKind.MATCH, candidate.id, job_id)
    return job_id


def _prefetch_selects(statements: list[str], settings) -> tuple[int, dict]:
    with SessionLocal() as db:
        items = [QueueItemSnapshot.of(item) for item in RetryQueue(db).get_eligible(QueueKind.MATCH)]
        statements.clear()
        context = MatchWorker(SessionLocal, None, settings).prefetch(db, items)
        return _selects(statements), context


def test_match_prefetch_reads_in_bulk(settings, statements) -> None:
    _enqueue_matches(1)
    one_item, context = _prefetch_selects(statements, settings)
    assert len(context["candidates"]) == 1

    _enqueue_matches(7, offset=1)
    eight_items, context = _prefetch_selects(statements, settings)
    assert len(context["candidates"]) == 8
    assert len(context["resumes"]) == 8

    assert one_item == eight_items == 4


def test_job_deleted_mid_cycle_is_removed_without_retry(fake_client, settings) -> None:
    with SessionLocal() as db:
        job_id = _job(db).id
        RetryQueue(db).enqueue(QueueKind.ANALYSIS, job_id)

    def analyze_after_delete(title: str, description: str) -> list[str]:
        with SessionLocal() as db:
            db.execute(delete(JobDescription).where(JobDescription.id == job_id))
            db.commit()
        return ["Python"]

    fake_client.analyze_job = analyze_after_delete
    report = AnalysisWorker(SessionLocal, fake_client, settings).tick()

    assert report.removed == 1
    assert report.requeued == 0
    assert report.dormant == 0
    with SessionLocal() as db:
        assert RetryQueue(db).list_items() == []


def test_stopping_one_kind_leaves_the_others_running(fake_client, settings) -> None:
    pool = WorkerPool(SessionLocal, fake_client, settings)
    pool.start(QueueKind.ANALYSIS)
    pool.start(QueueKind.EXTRACTION)
    try:
        assert pool.stop(QueueKind.ANALYSIS, timeout=5) is True

        assert not pool.is_running(QueueKind.ANALYSIS)
        assert pool.is_running(QueueKind.EXTRACTION)
    finally:
        assert pool.stop_all(grace_sec=5) is True

    assert not pool.is_running(QueueKind.EXTRACTION)
