from sqlalchemy import func, select

from resumatch.core.orchestrator import InlineOrchestrator
from resumatch.db.models import MatchResult
from resumatch.db.session import SessionLocal
from resumatch.types import ResumeUpload


def test_batch_match_scores_only_uncached_pairs(fake_client, settings) -> None:
    with SessionLocal() as db:
        orchestrator = InlineOrchestrator(db, client=fake_client, settings=settings)
        job_id = orchestrator.create_job_description("Backend", "Python, SQL, FastAPI").job_description_id
        resume_ids = [
            orchestrator.ingest_resume(
                ResumeUpload(file_name=f"cv-{i}.pdf", data=f"resume-{i}".encode(), text=f"Candidate {i}")
            ).resume_id
            for i in range(10)
        ]

        warmup = orchestrator.match_candidates(job_id, resume_ids[:7])
        assert all(o.status == "completed" for o in warmup)
        assert fake_client.calls["score_match"] == 7

        outcomes = orchestrator.match_candidates(job_id, resume_ids)

        assert fake_client.calls["score_match"] == 10
        assert [o.status for o in outcomes] == ["skipped"] * 7 + ["completed"] * 3
        assert db.scalar(select(func.count(MatchResult.id))) == 10
        assert len({o.match_result_id for o in outcomes}) == 10
