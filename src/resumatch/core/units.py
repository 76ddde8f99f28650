"""Per-kind inference and persistence steps shared by the inline path and the workers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from resumatch.db.models import Candidate, JobDescription, Resume
from resumatch.db.repositories import NewMatchResult, Repository
from resumatch.errors import PersistenceConflict
from resumatch.llm.client import InferenceClient
from resumatch.types import CandidateInfo, MatchScore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScoringInput:
    """Plain values for one scoring call, safe to hand to another thread."""

    candidate_skills: list[str]
    candidate_experience: str | None
    resume_content: str | None
    required_skills: list[str]

    @classmethod
    def build(cls, candidate: Candidate, resume: Resume | None, job: JobDescription) -> ScoringInput:
        return cls(
            candidate_skills=list(candidate.skills or []),
            candidate_experience=candidate.experience,
            resume_content=resume.content if resume is not None else None,
            required_skills=list(job.required_skills or []),
        )


def score(client: InferenceClient, data: ScoringInput) -> MatchScore:
    return client.score_match(
        candidate_skills=data.candidate_skills,
        required_skills=data.required_skills,
        candidate_experience=data.candidate_experience,
        resume_content=data.resume_content,
    )


def store_candidate(repo: Repository, resume_id: int, info: CandidateInfo) -> Candidate:
    """Create the candidate, converging on the existing row if another writer won."""
    try:
        return repo.create_candidate(resume_id, info)
    except PersistenceConflict:
        existing = repo.get_candidate_by_resume_id(resume_id)
        if existing is None:
            raise
        logger.info("Candidate for resume %s already written by another worker", resume_id)
        return existing


def store_public_html(repo: Repository, resume_id: int, html: str) -> None:
    if not repo.set_public_resume_html(resume_id, html):
        logger.info("Public resume html for resume %s was already set; keeping it", resume_id)


def store_required_skills(repo: Repository, job_id: int, skills: list[str]) -> JobDescription:
    return repo.set_required_skills(job_id, skills)


def match_row(
    result: MatchScore,
    *,
    resume_hash: str,
    job: JobDescription,
    candidate_id: int | None,
) -> NewMatchResult:
    return NewMatchResult.from_score(
        result,
        resume_content_hash=resume_hash,
        job=job,
        candidate_id=candidate_id,
    )
