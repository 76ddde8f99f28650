from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

UnitStatus = Literal["completed", "queued", "failed", "skipped"]


class ModelResponse(BaseModel):
    content: str
    raw: dict[str, Any] = Field(default_factory=dict)


class ResumeUpload(BaseModel):
    """An uploaded file after the extraction layer has produced its text."""

    file_name: str
    file_type: str = ""
    data: bytes
    text: str

    @property
    def file_size(self) -> int:
        return len(self.data)


class JobDescriptionInput(BaseModel):
    title: str
    description: str


class CandidateInfo(BaseModel):
    first_name: str
    last_name: str
    last_initial: str = ""
    email: str = ""
    phone: str | None = None
    skills: list[str] = Field(default_factory=list)
    experience: str | None = None


class MatchScore(BaseModel):
    score: int
    scorecard: dict[str, Any] = Field(default_factory=dict)
    matching_skills: list[str] = Field(default_factory=list)
    analysis: str = ""

    @field_validator("score")
    @classmethod
    def clamp_score(cls, value: int) -> int:
        return max(0, min(100, value))


class PublicCandidateProfile(BaseModel):
    """A candidate profile supplied by the caller rather than read from storage."""

    id: str
    first_name: str = ""
    last_initial: str = ""
    skills: list[str] = Field(default_factory=list)
    experience: str = ""
    public_resume_html: str = ""

    def fingerprint_payload(self) -> dict[str, Any]:
        return {
            "skills": self.skills,
            "experience": self.experience,
            "html": self.public_resume_html,
        }


class UnitOutcome(BaseModel):
    status: UnitStatus
    error: str | None = None


class UploadOutcome(BaseModel):
    file_name: str
    status: UnitStatus
    resume_id: int | None = None
    candidate_id: int | None = None
    extraction: UnitOutcome | None = None
    anonymization: UnitOutcome | None = None
    error: str | None = None


class JobOutcome(BaseModel):
    status: UnitStatus
    job_description_id: int | None = None
    required_skills: list[str] = Field(default_factory=list)
    error: str | None = None


class MatchOutcome(BaseModel):
    candidate_ref: str
    status: UnitStatus
    match_result_id: int | None = None
    match_score: int | None = None
    error: str | None = None
