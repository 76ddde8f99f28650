from __future__ import annotations

import pytest

from resumatch.db.repositories import Repository
from resumatch.db.session import SessionLocal
from resumatch.errors import PersistenceConflict, ReferencedEntityMissing
from resumatch.types import CandidateInfo, JobDescriptionInput, ResumeUpload


def _upload(data: bytes = b"%PDF resume bytes", name: str = "cv.pdf") -> ResumeUpload:
    return ResumeUpload(file_name=name, file_type="application/pdf", data=data, text="Python engineer")


def test_identical_resume_bytes_resolve_to_one_record() -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        first, created_first = repo.get_or_create_by_fingerprint("resume", _upload())
        second, created_second = repo.get_or_create_by_fingerprint("resume", _upload(name="renamed.pdf"))

        assert created_first is True
        assert created_second is False
        assert first.id == second.id
        assert second.file_name == "cv.pdf"
        assert first.file_size == len(b"%PDF resume bytes")


def test_job_descriptions_dedup_on_trimmed_description() -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        first, _ = repo.get_or_create_by_fingerprint(
            "job", JobDescriptionInput(title="Backend", description="Build APIs in Python")
        )
        second, created = repo.get_or_create_by_fingerprint(
            "job", JobDescriptionInput(title="Another title", description="  Build APIs in Python\n")
        )

        assert created is False
        assert first.id == second.id
        assert first.required_skills == []
        assert first.description == "Build APIs in Python"


def test_get_or_create_rejects_mismatched_content() -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        with pytest.raises(TypeError):
            repo.get_or_create_by_fingerprint("resume", JobDescriptionInput(title="t", description="d"))
        with pytest.raises(ValueError):
            repo.get_or_create_by_fingerprint("profile", _upload())  # type: ignore[arg-type]


def test_create_candidate_conflict_is_surfaced() -> None:
    info = CandidateInfo(first_name="Ada", last_name="Lovelace", skills=["Python"])
    with SessionLocal() as db:
        repo = Repository(db)
        resume, _ = repo.get_or_create_by_fingerprint("resume", _upload())
        repo.create_candidate(resume.id, info)

        with pytest.raises(PersistenceConflict):
            repo.create_candidate(resume.id, info)
        assert len(repo.get_candidates_by_resume_ids([resume.id])) == 1


def test_public_resume_html_is_write_once() -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        resume, _ = repo.get_or_create_by_fingerprint("resume", _upload())

        assert repo.set_public_resume_html(resume.id, "<div>first</div>") is True
        assert repo.set_public_resume_html(resume.id, "<div>second</div>") is False

        db.expire_all()
        assert repo.get_resume(resume.id).public_resume_html == "<div>first</div>"


def test_batch_reads_return_only_existing_rows() -> None:
    with SessionLocal() as db:
        repo = Repository(db)
        ids = [
            repo.get_or_create_by_fingerprint("resume", _upload(data=f"resume-{i}".encode()))[0].id
            for i in range(5)
        ]

        found = repo.get_resumes_by_ids(ids + [9999, ids[0]])
        assert sorted(r.id for r in found) == sorted(ids)
        assert repo.get_resumes_by_ids([]) == []
        assert repo.get_candidates_by_ids([1, 2]) == []


def test_required_skills_for_missing_job_raises_entity_missing() -> None:
    with SessionLocal() as db:
        with pytest.raises(ReferencedEntityMissing) as excinfo:
            Repository(db).set_required_skills(777, ["Python"])

    assert excinfo.value.entity == "job description"
    assert excinfo.value.entity_id == 777
