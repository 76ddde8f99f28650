from resumatch.core.orchestrator import InlineOrchestrator
from resumatch.core.workers import WorkerPool
from resumatch.db.models import QueueKind
from resumatch.db.queue import RetryQueue
from resumatch.db.repositories import Repository
from resumatch.db.session import SessionLocal
from resumatch.errors import TransientQuotaError


def test_rate_limited_analysis_is_finished_by_the_worker(fake_client, settings) -> None:
    fake_client.fail_always("analyze_job", TransientQuotaError("Rate limit reached for requests"))
    sleeps: list[float] = []

    with SessionLocal() as db:
        orchestrator = InlineOrchestrator(db, client=fake_client, settings=settings, sleep=sleeps.append)
        outcome = orchestrator.create_job_description("Data Engineer", "Spark, Python, Airflow")

        assert outcome.status == "queued"
        assert outcome.required_skills == []
        assert len(sleeps) == settings.inline_max_attempts
        rows = RetryQueue(db).list_items(kind=QueueKind.ANALYSIS)
        assert [row.owner_id for row in rows] == [outcome.job_description_id]

    fake_client.recover("analyze_job")
    pool = WorkerPool(SessionLocal, fake_client, settings)
    report = pool.get(QueueKind.ANALYSIS).tick()

    assert report.succeeded == 1
    with SessionLocal() as db:
        job = Repository(db).get_job_description(outcome.job_description_id)
        assert job.required_skills == fake_client.skills
        assert job.analyzed_at is not None
        assert RetryQueue(db).list_items() == []
