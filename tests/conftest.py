from __future__ import annotations

import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="resumatch-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT / 'test.db'}"
os.environ["DATA_DIR"] = str(_TEST_ROOT / "data")
os.environ["APP_ENV"] = "test"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["SIMULATE_RATE_LIMIT"] = "false"
os.environ["OPENAI_API_KEY"] = "test-key"

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402

from resumatch.config import get_settings  # noqa: E402
from resumatch.db.base import Base  # noqa: E402
from resumatch.db.session import engine  # noqa: E402
from resumatch.types import CandidateInfo, MatchScore  # noqa: E402


class FakeInferenceClient:
    """Stands in for InferenceClient; errors can be scripted per method."""

    def __init__(self) -> None:
        self.calls: dict[str, int] = defaultdict(int)
        self.scripted: dict[str, list[Exception]] = defaultdict(list)
        self.always: dict[str, Exception] = {}
        self.skills = ["Python", "SQL", "FastAPI"]
        self.score = 82
        self._lock = threading.Lock()

    def fail(self, method: str, *errors: Exception) -> None:
        self.scripted[method].extend(errors)

    def fail_always(self, method: str, error: Exception) -> None:
        self.always[method] = error

    def recover(self, method: str) -> None:
        self.always.pop(method, None)
        self.scripted.pop(method, None)

    def _call(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
            error = self.always.get(method)
            if error is None and self.scripted[method]:
                error = self.scripted[method].pop(0)
        if error is not None:
            raise error

    def extract_candidate(self, resume_text: str) -> CandidateInfo:
        self._call("extract_candidate")
        return CandidateInfo(
            first_name="Ada",
            last_name="Lovelace",
            last_initial="L",
            email="ada@example.com",
            skills=["Python", "SQL"],
            experience="Eight years building data platforms.",
        )

    def anonymize_resume(self, resume_text: str) -> str:
        self._call("anonymize_resume")
        return "<div><h2>Experience</h2><p>Data platform engineer</p></div>"

    def analyze_job(self, title: str, description: str) -> list[str]:
        self._call("analyze_job")
        return list(self.skills)

    def score_match(self, **kwargs) -> MatchScore:
        self._call("score_match")
        return MatchScore(
            score=self.score,
            scorecard={"Relevant Skills": {"weight": 40, "score": 85, "comments": "Strong"}},
            matching_skills=["Python"],
            analysis="<h1>Summary of Match</h1><p>Good fit</p>",
        )


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def fake_client() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture
def statements() -> list[str]:
    """SQL text of every statement sent to the engine while the test runs."""
    captured: list[str] = []

    def _capture(conn, cursor, statement, parameters, context, executemany) -> None:
        captured.append(statement)

    event.listen(engine, "before_cursor_execute", _capture)
    yield captured
    event.remove(engine, "before_cursor_execute", _capture)
