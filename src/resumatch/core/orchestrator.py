from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from resumatch.config import Settings, get_settings
from resumatch.core import units
from resumatch.core.fingerprint import fingerprint_profile
from resumatch.core.ratelimit import is_rate_limit_error, retry_with_backoff
from resumatch.db.models import QueueKind
from resumatch.db.queue import RetryQueue
from resumatch.db.repositories import NewMatchResult, Repository
from resumatch.errors import ReferencedEntityMissing, TransientQuotaError
from resumatch.llm.client import InferenceClient
from resumatch.types import (
    JobDescriptionInput,
    JobOutcome,
    MatchOutcome,
    PublicCandidateProfile,
    ResumeUpload,
    UnitOutcome,
    UnitStatus,
    UploadOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Attempt:
    value: Any = None
    error: Exception | None = None


def _combine(statuses: Iterable[UnitStatus]) -> UnitStatus:
    statuses = set(statuses)
    if "failed" in statuses:
        return "failed"
    if "queued" in statuses:
        return "queued"
    return "completed"


class InlineOrchestrator:
    """
    Request-time path: try each unit of work synchronously, fall back to the
    retry queue on a classified rate limit.

    Inference calls may run on short-lived pool threads; every store write
    happens on the request session.
    """

    def __init__(
        self,
        session: Session,
        client: InferenceClient | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.session = session
        self.client = client or InferenceClient(self.settings)
        self.repo = Repository(session, self.settings)
        self.queue = RetryQueue(session, self.settings)
        self.sleep = sleep

    # -- resumes -------------------------------------------------------------

    def ingest_resume(self, upload: ResumeUpload) -> UploadOutcome:
        resume, created = self.repo.get_or_create_by_fingerprint("resume", upload)
        if not created:
            candidate = self.repo.get_candidate_by_resume_id(resume.id)
            logger.info("Duplicate resume upload %s matches resume %s", upload.file_name, resume.id)
            return UploadOutcome(
                file_name=upload.file_name,
                status="skipped",
                resume_id=resume.id,
                candidate_id=candidate.id if candidate is not None else None,
            )

        resume_id = resume.id
        text = resume.content
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="upload") as pool:
            extraction_future = pool.submit(self._capture, partial(self.client.extract_candidate, text))
            anonymization_future = pool.submit(self._capture, partial(self.client.anonymize_resume, text))
            extraction_attempt = extraction_future.result()
            anonymization_attempt = anonymization_future.result()

        extraction, candidate = self._settle(
            QueueKind.EXTRACTION,
            resume_id,
            extraction_attempt,
            lambda info: units.store_candidate(self.repo, resume_id, info),
        )
        anonymization, _ = self._settle(
            QueueKind.ANONYMIZATION,
            resume_id,
            anonymization_attempt,
            lambda html: units.store_public_html(self.repo, resume_id, html),
        )

        return UploadOutcome(
            file_name=upload.file_name,
            status=_combine([extraction.status, anonymization.status]),
            resume_id=resume_id,
            candidate_id=candidate.id if candidate is not None else None,
            extraction=extraction,
            anonymization=anonymization,
        )

    def ingest_resumes(self, uploads: Sequence[ResumeUpload]) -> list[UploadOutcome]:
        outcomes: list[UploadOutcome] = []
        for upload in uploads:
            try:
                outcomes.append(self.ingest_resume(upload))
            except Exception as exc:
                self.session.rollback()
                logger.exception("Resume upload %s failed", upload.file_name)
                outcomes.append(UploadOutcome(file_name=upload.file_name, status="failed", error=str(exc)))

        summary = {
            status: sum(1 for outcome in outcomes if outcome.status == status)
            for status in ("completed", "queued", "failed", "skipped")
        }
        logger.info("Processed %s resume upload(s): %s", len(outcomes), summary)
        return outcomes

    # -- job descriptions ----------------------------------------------------

    def create_job_description(self, title: str, description: str) -> JobOutcome:
        job, created = self.repo.get_or_create_by_fingerprint(
            "job", JobDescriptionInput(title=title, description=description)
        )
        if not created:
            logger.info("Duplicate job description matches job %s", job.id)
            return JobOutcome(
                status="skipped",
                job_description_id=job.id,
                required_skills=list(job.required_skills or []),
            )

        analysis = self.analyze_job_description(job.id)
        job = self.repo.get_job_description(job.id)
        return JobOutcome(
            status=analysis.status,
            job_description_id=job.id,
            required_skills=list(job.required_skills or []),
            error=analysis.error,
        )

    def analyze_job_description(self, job_id: int) -> UnitOutcome:
        job = self.repo.get_job_description(job_id)
        if job is None:
            raise ReferencedEntityMissing("job description", job_id)

        attempt = self._capture(partial(self.client.analyze_job, job.title, job.description))
        outcome, _ = self._settle(
            QueueKind.ANALYSIS,
            job_id,
            attempt,
            lambda skills: units.store_required_skills(self.repo, job_id, skills),
        )
        return outcome

    # -- matching ------------------------------------------------------------

    def match_candidates(self, job_id: int, resume_ids: Sequence[int]) -> list[MatchOutcome]:
        """
        Score stored candidates against one job.

        Three batch reads regardless of how many resumes are passed: resumes,
        their candidates and the cached results for their hash pairs.
        """
        job = self.repo.get_job_description(job_id)
        if job is None:
            raise ReferencedEntityMissing("job description", job_id)

        ordered_ids = list(dict.fromkeys(resume_ids))
        resumes = {r.id: r for r in self.repo.get_resumes_by_ids(ordered_ids)}
        candidates = {c.resume_id: c for c in self.repo.get_candidates_by_resume_ids(ordered_ids)}
        cached = {
            row.resume_content_hash: row
            for row in self.repo.get_match_results_by_fingerprint_pairs(
                (resume.content_hash, job.content_hash) for resume in resumes.values()
            )
        }

        outcomes: dict[int, MatchOutcome] = {}
        pending: list[tuple[int, int, str, units.ScoringInput]] = []
        for resume_id in ordered_ids:
            ref = str(resume_id)
            resume = resumes.get(resume_id)
            if resume is None:
                outcomes[resume_id] = MatchOutcome(candidate_ref=ref, status="failed", error=f"resume {resume_id} not found")
                continue
            candidate = candidates.get(resume_id)
            if candidate is None:
                outcomes[resume_id] = MatchOutcome(
                    candidate_ref=ref,
                    status="failed",
                    error=f"no candidate extracted for resume {resume_id}",
                )
                continue
            existing = cached.get(resume.content_hash)
            if existing is not None:
                outcomes[resume_id] = MatchOutcome(
                    candidate_ref=ref,
                    status="skipped",
                    match_result_id=existing.id,
                    match_score=existing.match_score,
                )
                continue
            pending.append((resume_id, candidate.id, resume.content_hash, units.ScoringInput.build(candidate, resume, job)))

        attempts = self._score_all([data for _, _, _, data in pending])
        rows: list[NewMatchResult] = []
        for (resume_id, candidate_id, resume_hash, _), attempt in zip(pending, attempts):
            ref = str(resume_id)
            if attempt.error is None:
                rows.append(units.match_row(attempt.value, resume_hash=resume_hash, job=job, candidate_id=candidate_id))
            elif is_rate_limit_error(attempt.error):
                self.queue.enqueue(QueueKind.MATCH, candidate_id, job.id)
                outcomes[resume_id] = MatchOutcome(candidate_ref=ref, status="queued", error=str(attempt.error))
            else:
                logger.error("Scoring resume %s against job %s failed: %s", resume_id, job.id, attempt.error)
                outcomes[resume_id] = MatchOutcome(candidate_ref=ref, status="failed", error=str(attempt.error))

        stored = self._store_match_rows(rows)
        for resume_id, _, resume_hash, _ in pending:
            if resume_id in outcomes:
                continue
            row = stored.get(resume_hash)
            if row is None:
                outcomes[resume_id] = MatchOutcome(
                    candidate_ref=str(resume_id),
                    status="failed",
                    error="match result was not stored",
                )
                continue
            outcomes[resume_id] = MatchOutcome(
                candidate_ref=str(resume_id),
                status="completed",
                match_result_id=row.id,
                match_score=row.match_score,
            )

        return [outcomes[resume_id] for resume_id in ordered_ids]

    def match_public_profiles(self, job_id: int, profiles: Sequence[PublicCandidateProfile]) -> list[MatchOutcome]:
        """
        Score caller-supplied profiles that have no stored resume.

        Each profile is keyed by a canonical hash of its content. A rate-limited
        profile cannot be queued since nothing durable owns it, so it is
        reported failed with a retry hint.
        """
        job = self.repo.get_job_description(job_id)
        if job is None:
            raise ReferencedEntityMissing("job description", job_id)

        keyed = [(profile, fingerprint_profile(profile.fingerprint_payload())) for profile in profiles]
        cached = {
            row.resume_content_hash: row
            for row in self.repo.get_match_results_by_fingerprint_pairs(
                (profile_hash, job.content_hash) for _, profile_hash in keyed
            )
        }

        # profiles sharing a hash share one scoring call and one outcome
        by_hash: dict[str, MatchOutcome] = {}
        pending: list[tuple[str, str, units.ScoringInput]] = []
        scheduled: set[str] = set()
        for profile, profile_hash in keyed:
            if profile_hash in by_hash or profile_hash in scheduled:
                continue
            existing = cached.get(profile_hash)
            if existing is not None:
                by_hash[profile_hash] = MatchOutcome(
                    candidate_ref=profile.id,
                    status="skipped",
                    match_result_id=existing.id,
                    match_score=existing.match_score,
                )
                continue
            scheduled.add(profile_hash)
            pending.append(
                (
                    profile.id,
                    profile_hash,
                    units.ScoringInput(
                        candidate_skills=list(profile.skills),
                        candidate_experience=profile.experience or None,
                        resume_content=profile.public_resume_html or None,
                        required_skills=list(job.required_skills or []),
                    ),
                )
            )

        attempts = self._score_all([data for _, _, data in pending])
        rows: list[NewMatchResult] = []
        for (ref, profile_hash, _), attempt in zip(pending, attempts):
            if attempt.error is None:
                rows.append(units.match_row(attempt.value, resume_hash=profile_hash, job=job, candidate_id=None))
            elif is_rate_limit_error(attempt.error):
                by_hash[profile_hash] = MatchOutcome(
                    candidate_ref=ref,
                    status="failed",
                    error=self._retry_hint(attempt.error),
                )
            else:
                logger.error("Scoring profile %s against job %s failed: %s", ref, job.id, attempt.error)
                by_hash[profile_hash] = MatchOutcome(candidate_ref=ref, status="failed", error=str(attempt.error))

        stored = self._store_match_rows(rows)
        for ref, profile_hash, _ in pending:
            if profile_hash in by_hash:
                continue
            row = stored.get(profile_hash)
            if row is None:
                by_hash[profile_hash] = MatchOutcome(
                    candidate_ref=ref,
                    status="failed",
                    error="match result was not stored",
                )
                continue
            by_hash[profile_hash] = MatchOutcome(
                candidate_ref=ref,
                status="completed",
                match_result_id=row.id,
                match_score=row.match_score,
            )

        return [
            by_hash[profile_hash].model_copy(update={"candidate_ref": profile.id})
            for profile, profile_hash in keyed
        ]

    # -- helpers -------------------------------------------------------------

    def _attempt(self, call: Callable[[], Any]) -> Any:
        return retry_with_backoff(call, max_attempts=self.settings.inline_max_attempts, sleep=self.sleep)

    def _capture(self, call: Callable[[], Any]) -> _Attempt:
        try:
            return _Attempt(value=self._attempt(call))
        except Exception as exc:
            return _Attempt(error=exc)

    def _score_all(self, inputs: list[units.ScoringInput]) -> list[_Attempt]:
        if not inputs:
            return []
        with ThreadPoolExecutor(max_workers=len(inputs), thread_name_prefix="score") as pool:
            return list(pool.map(lambda data: self._capture(partial(units.score, self.client, data)), inputs))

    def _settle(
        self,
        kind: QueueKind,
        owner_id: int,
        attempt: _Attempt,
        persist: Callable[[Any], Any],
    ) -> tuple[UnitOutcome, Any]:
        if attempt.error is None:
            try:
                stored = persist(attempt.value)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Persisting %s result for %s failed", kind.value, owner_id)
                return UnitOutcome(status="failed", error=str(exc)), None
            return UnitOutcome(status="completed"), stored

        if is_rate_limit_error(attempt.error):
            self.queue.enqueue(kind, owner_id)
            logger.warning("%s for %s rate limited, queued for retry", kind.value, owner_id)
            return UnitOutcome(status="queued", error=str(attempt.error)), None

        logger.error("%s for %s failed: %s", kind.value, owner_id, attempt.error)
        return UnitOutcome(status="failed", error=str(attempt.error)), None

    def _store_match_rows(self, rows: list[NewMatchResult]) -> dict[str, Any]:
        """Write new results and return the surviving row per resume hash."""
        if not rows:
            return {}
        created = self.repo.batch_create_match_results(rows)
        stored = {row.resume_content_hash: row for row in created}
        missing = [row.pair for row in rows if row.resume_content_hash not in stored]
        if missing:
            # another request won the race for these pairs
            for row in self.repo.get_match_results_by_fingerprint_pairs(missing):
                stored[row.resume_content_hash] = row
        return stored

    @staticmethod
    def _retry_hint(error: Exception) -> str:
        retry_after = getattr(error, "retry_after", None) if isinstance(error, TransientQuotaError) else None
        if retry_after is not None:
            return f"rate limited, retry after {retry_after.isoformat()}"
        return "rate limited, retry in about a minute"
