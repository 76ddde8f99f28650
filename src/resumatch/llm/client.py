from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from resumatch.config import Settings, get_settings
from resumatch.errors import InferenceError, TransientQuotaError
from resumatch.llm.prompts import (
    CANDIDATE_EXTRACTION_PROMPT,
    JOB_ANALYSIS_PROMPT,
    JOB_ANALYSIS_SYSTEM,
    MATCH_SCORING_PROMPT,
    MATCH_SCORING_SYSTEM,
    RESUME_ANONYMIZATION_PROMPT,
)
from resumatch.llm.providers import LLMProvider, build_provider
from resumatch.types import CandidateInfo, MatchScore

logger = logging.getLogger(__name__)

EMPTY_RESUME_HTML = "<div><p>No resume content provided</p></div>"
RESUME_EXCERPT_CHARS = 1000

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "first_name": ("first_name", "firstName"),
    "last_name": ("last_name", "lastName"),
    "last_initial": ("last_initial", "lastInitial"),
    "email": ("email", "emailAddress"),
    "phone": ("phone", "phoneNumber", "phone_number"),
    "experience": ("experience", "experience_summary"),
    "matching_skills": ("matching_skills", "matchingSkills"),
}


def _pick(data: dict[str, Any], field: str) -> Any:
    for key in _FIELD_ALIASES.get(field, (field,)):
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def clean_html(content: str) -> str:
    html = content.strip()
    html = re.sub(r"^```(?:html)?", "", html).strip()
    html = re.sub(r"```$", "", html).strip()
    html = html.replace("\\n", "").replace("\n", "")
    return html


class InferenceClient:
    """One call per task kind against the inference service.

    Every method either returns a typed result or raises. Rate limits surface
    as the provider's own exception so callers can classify them.
    """

    def __init__(self, settings: Settings | None = None, provider: LLMProvider | None = None):
        self.settings = settings or get_settings()
        self.provider = provider or build_provider(self.settings)

    def extract_candidate(self, resume_text: str) -> CandidateInfo:
        self._check_simulated_rate_limit()
        prompt = CANDIDATE_EXTRACTION_PROMPT.format(resume_text=resume_text)
        data = self.provider.complete_json(model=self.settings.openai_model_extractor, prompt=prompt)
        data = data.get("candidate", data) if isinstance(data.get("candidate"), dict) else data
        if not data:
            raise InferenceError("candidate extraction returned no JSON")

        first_name = _pick(data, "first_name")
        last_name = _pick(data, "last_name")
        if not first_name or not last_name:
            raise InferenceError("candidate extraction did not return a name")

        skills = data.get("skills")
        try:
            return CandidateInfo(
                first_name=str(first_name),
                last_name=str(last_name),
                last_initial=str(_pick(data, "last_initial") or str(last_name)[:1]),
                email=str(_pick(data, "email") or ""),
                phone=_pick(data, "phone"),
                skills=[str(item) for item in skills] if isinstance(skills, list) else [],
                experience=_pick(data, "experience"),
            )
        except ValidationError as exc:
            raise InferenceError(f"candidate extraction payload invalid: {exc}") from exc

    def anonymize_resume(self, resume_text: str) -> str:
        if not resume_text or not resume_text.strip():
            return EMPTY_RESUME_HTML

        self._check_simulated_rate_limit()
        if len(resume_text) > self.settings.max_resume_chars:
            logger.warning(
                "Resume text is very large, truncating from %s to %s chars",
                len(resume_text),
                self.settings.max_resume_chars,
            )
            resume_text = resume_text[: self.settings.max_resume_chars]

        prompt = RESUME_ANONYMIZATION_PROMPT.format(resume_text=resume_text)
        response = self.provider.complete_text(model=self.settings.openai_model_anonymizer, prompt=prompt)
        html = clean_html(response.content)
        if len(html) < 10 or "<" not in html:
            raise InferenceError("anonymized resume does not look like HTML")
        return html

    def analyze_job(self, title: str, description: str) -> list[str]:
        self._check_simulated_rate_limit()
        prompt = JOB_ANALYSIS_PROMPT.format(title=title, description=description)
        data = self.provider.complete_json(
            model=self.settings.openai_model_analyzer,
            prompt=prompt,
            system=JOB_ANALYSIS_SYSTEM,
        )
        skills = data.get("skills")
        if not isinstance(skills, list):
            raise InferenceError("job analysis did not return a skills list")
        return [str(item).strip() for item in skills if str(item).strip()]

    def score_match(
        self,
        *,
        candidate_skills: list[str],
        required_skills: list[str],
        candidate_experience: str | None = None,
        resume_content: str | None = None,
    ) -> MatchScore:
        self._check_simulated_rate_limit()
        prompt = MATCH_SCORING_PROMPT.format(
            candidate_skills=json.dumps(candidate_skills),
            candidate_experience=candidate_experience or "Not provided",
            required_skills=json.dumps(required_skills),
            resume_excerpt=(resume_content or "")[:RESUME_EXCERPT_CHARS],
        )
        data = self.provider.complete_json(
            model=self.settings.openai_model_scorer,
            prompt=prompt,
            system=MATCH_SCORING_SYSTEM,
        )
        if "score" not in data:
            raise InferenceError("match scoring did not return a score")

        matching = _pick(data, "matching_skills")
        try:
            return MatchScore(
                score=int(round(float(data["score"]))),
                scorecard=data.get("scorecard") if isinstance(data.get("scorecard"), dict) else {},
                matching_skills=[str(item) for item in matching] if isinstance(matching, list) else [],
                analysis=str(data.get("analysis") or ""),
            )
        except (TypeError, ValueError, ValidationError) as exc:
            raise InferenceError(f"match scoring payload invalid: {exc}") from exc

    def _check_simulated_rate_limit(self) -> None:
        if self.settings.simulate_rate_limit:
            raise TransientQuotaError("Simulated rate limit for testing")
