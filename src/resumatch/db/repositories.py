from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from resumatch.config import Settings, get_settings
from resumatch.core.fingerprint import fingerprint_bytes, fingerprint_text, normalize_text
from resumatch.db.base import utcnow
from resumatch.db.dialect import upsert_insert
from resumatch.db.models import Candidate, JobDescription, MatchResult, QueueItem, Resume
from resumatch.errors import PersistenceConflict, ReferencedEntityMissing
from resumatch.types import CandidateInfo, JobDescriptionInput, MatchScore, ResumeUpload

logger = logging.getLogger(__name__)

FingerprintKind = Literal["resume", "job"]
FingerprintPair = tuple[str, str]


@dataclass(slots=True)
class NewMatchResult:
    resume_content_hash: str
    job_content_hash: str
    job_description_id: int
    candidate_id: int | None
    match_score: int
    scorecard: dict[str, Any] = field(default_factory=dict)
    matching_skills: list[str] = field(default_factory=list)
    analysis: str = ""

    @classmethod
    def from_score(
        cls,
        score: MatchScore,
        *,
        resume_content_hash: str,
        job: JobDescription,
        candidate_id: int | None,
    ) -> NewMatchResult:
        return cls(
            resume_content_hash=resume_content_hash,
            job_content_hash=job.content_hash,
            job_description_id=job.id,
            candidate_id=candidate_id,
            match_score=score.score,
            scorecard=score.scorecard,
            matching_skills=score.matching_skills,
            analysis=score.analysis,
        )

    @property
    def pair(self) -> FingerprintPair:
        return (self.resume_content_hash, self.job_content_hash)

    def as_row(self) -> dict[str, Any]:
        now = utcnow()
        return {**asdict(self), "created_at": now, "updated_at": now}


MATCH_RESULT_COLUMNS = len(NewMatchResult.__slots__) + 2


class Repository:
    def __init__(self, session: Session, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    # -- fingerprint dedup ---------------------------------------------------

    def get_or_create_by_fingerprint(
        self,
        kind: FingerprintKind,
        content: ResumeUpload | JobDescriptionInput,
    ) -> tuple[Resume | JobDescription, bool]:
        """
        Return the row for ``content``'s fingerprint, creating it if absent.

        The boolean is True when this call inserted the row. Losing an insert
        race to a concurrent request resolves to the winner's row.
        """
        if kind == "resume":
            if not isinstance(content, ResumeUpload):
                raise TypeError("resume fingerprints need a ResumeUpload")
            model: type[Resume] | type[JobDescription] = Resume
            content_hash = fingerprint_bytes(content.data)
            values: dict[str, Any] = {
                "file_name": content.file_name,
                "file_size": content.file_size,
                "file_type": content.file_type,
                "content": content.text,
            }
        elif kind == "job":
            if not isinstance(content, JobDescriptionInput):
                raise TypeError("job fingerprints need a JobDescriptionInput")
            model = JobDescription
            content_hash = fingerprint_text(content.description)
            values = {
                "title": normalize_text(content.title),
                "description": normalize_text(content.description),
                "required_skills": [],
            }
        else:
            raise ValueError(f"unsupported fingerprint kind '{kind}'")

        existing = self.session.scalar(select(model).where(model.content_hash == content_hash))
        if existing is not None:
            return existing, False

        record = model(content_hash=content_hash, **values)
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            winner = self.session.scalar(select(model).where(model.content_hash == content_hash))
            if winner is None:
                raise
            logger.info("Concurrent %s insert for hash %s resolved to id=%s", kind, content_hash[:16], winner.id)
            return winner, False

        self.session.refresh(record)
        return record, True

    # -- single reads --------------------------------------------------------

    def get_resume(self, resume_id: int) -> Resume | None:
        return self.session.get(Resume, resume_id)

    def get_job_description(self, job_id: int) -> JobDescription | None:
        return self.session.get(JobDescription, job_id)

    def get_candidate(self, candidate_id: int) -> Candidate | None:
        return self.session.get(Candidate, candidate_id)

    def get_candidate_by_resume_id(self, resume_id: int) -> Candidate | None:
        return self.session.scalar(select(Candidate).where(Candidate.resume_id == resume_id))

    def get_match_result_by_fingerprints(self, resume_hash: str, job_hash: str) -> MatchResult | None:
        statement = select(MatchResult).where(
            and_(
                MatchResult.resume_content_hash == resume_hash,
                MatchResult.job_content_hash == job_hash,
            )
        )
        return self.session.scalar(statement)

    # -- batch reads ---------------------------------------------------------

    def get_resumes_by_ids(self, ids: Iterable[int]) -> list[Resume]:
        return self._get_by_ids(Resume, ids)

    def get_job_descriptions_by_ids(self, ids: Iterable[int]) -> list[JobDescription]:
        return self._get_by_ids(JobDescription, ids)

    def get_candidates_by_ids(self, ids: Iterable[int]) -> list[Candidate]:
        return self._get_by_ids(Candidate, ids)

    def get_candidates_by_resume_ids(self, resume_ids: Iterable[int]) -> list[Candidate]:
        unique_ids = sorted(set(resume_ids))
        if not unique_ids:
            return []
        statement = select(Candidate).where(Candidate.resume_id.in_(unique_ids))
        return list(self.session.scalars(statement).all())

    def get_match_results_by_fingerprint_pairs(self, pairs: Iterable[FingerprintPair]) -> list[MatchResult]:
        unique_pairs = sorted(set(pairs))
        if not unique_pairs:
            return []
        statement = select(MatchResult).where(
            or_(
                *[
                    and_(
                        MatchResult.resume_content_hash == resume_hash,
                        MatchResult.job_content_hash == job_hash,
                    )
                    for resume_hash, job_hash in unique_pairs
                ]
            )
        )
        return list(self.session.scalars(statement).all())

    def list_match_results_for_job(self, job_id: int) -> list[MatchResult]:
        statement = (
            select(MatchResult)
            .where(MatchResult.job_description_id == job_id)
            .order_by(MatchResult.match_score.desc(), MatchResult.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def _get_by_ids(self, model: Any, ids: Iterable[int]) -> list[Any]:
        unique_ids = sorted(set(ids))
        if not unique_ids:
            return []
        return list(self.session.scalars(select(model).where(model.id.in_(unique_ids))).all())

    # -- field writes --------------------------------------------------------

    def create_candidate(self, resume_id: int, info: CandidateInfo) -> Candidate:
        candidate = Candidate(resume_id=resume_id, **info.model_dump())
        self.session.add(candidate)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise PersistenceConflict("candidate", resume_id) from exc
        self.session.refresh(candidate)
        return candidate

    def set_public_resume_html(self, resume_id: int, html: str) -> bool:
        """Write the anonymized HTML once; later writers are no-ops."""
        result = self.session.execute(
            update(Resume)
            .where(and_(Resume.id == resume_id, Resume.public_resume_html.is_(None)))
            .values(public_resume_html=html, updated_at=utcnow())
        )
        self.session.commit()
        return bool(result.rowcount)

    def set_required_skills(self, job_id: int, skills: list[str]) -> JobDescription:
        job = self.session.get(JobDescription, job_id)
        if job is None:
            raise ReferencedEntityMissing("job description", job_id)
        job.required_skills = list(skills)
        job.analyzed_at = utcnow()
        self.session.commit()
        self.session.refresh(job)
        return job

    # -- match results -------------------------------------------------------

    def create_match_result_and_complete_queue_item(
        self,
        data: NewMatchResult,
        queue_item_id: int,
    ) -> MatchResult:
        """
        Insert the result and delete its queue row in one transaction.

        A row for the same hash pair written by someone else wins silently.
        """
        statement = (
            upsert_insert(self.session, MatchResult)
            .values(data.as_row())
            .on_conflict_do_nothing(index_elements=["resume_content_hash", "job_content_hash"])
        )
        try:
            self.session.execute(statement)
            self.session.execute(delete(QueueItem).where(QueueItem.id == queue_item_id))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        result = self.get_match_result_by_fingerprints(*data.pair)
        if result is None:
            raise RuntimeError(f"match result for pair {data.pair} vanished after insert")
        return result

    def batch_create_match_results(self, rows: Sequence[NewMatchResult]) -> list[MatchResult]:
        """
        Insert many results, ignoring pairs that already exist.

        Rows are chunked under the bind-parameter ceiling and the chunks are
        written concurrently, each on its own session. Only the rows this call
        actually inserted are returned.
        """
        if not rows:
            return []

        chunk_size = max(1, self.settings.db_max_bind_params // MATCH_RESULT_COLUMNS)
        chunks = [list(rows[start : start + chunk_size]) for start in range(0, len(rows), chunk_size)]

        if len(chunks) == 1:
            created_ids = _insert_match_chunk(self.session, chunks[0])
        else:
            factory = sessionmaker(bind=self.session.get_bind(), autoflush=False, future=True)

            def run(chunk: list[NewMatchResult]) -> list[int]:
                with factory() as chunk_session:
                    return _insert_match_chunk(chunk_session, chunk)

            with ThreadPoolExecutor(max_workers=len(chunks), thread_name_prefix="match-insert") as pool:
                created_ids = [row_id for ids in pool.map(run, chunks) for row_id in ids]

        if len(created_ids) < len(rows):
            logger.info(
                "Skipped %s match results already present for their hash pair",
                len(rows) - len(created_ids),
            )
        return self._get_by_ids(MatchResult, created_ids)


def _insert_match_chunk(session: Session, chunk: list[NewMatchResult]) -> list[int]:
    statement = (
        upsert_insert(session, MatchResult)
        .values([row.as_row() for row in chunk])
        .on_conflict_do_nothing(index_elements=["resume_content_hash", "job_content_hash"])
        .returning(MatchResult.id)
    )
    try:
        created = list(session.scalars(statement).all())
        session.commit()
    except Exception:
        session.rollback()
        raise
    return created
