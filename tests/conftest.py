import sys
from pathlib import Path
from typing import Optional

import pytest

# Ensure repository root is on sys.path so `import coding_exam` works locally
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coding_exam.cache import KnowledgeCache  # noqa: E402
from coding_exam.models import Answer, CodeStore, Question  # noqa: E402


class ScriptedModel:
    """Language model that replays canned responses and records every call."""

    def __init__(self, responses, name="scripted-model"):
        self.name = name
        self.responses = list(responses)
        self.calls: list[list[dict]] = []

    async def invoke(self, messages):
        self.calls.append(messages)
        if not self.responses:
            raise RuntimeError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class CountingResolver:
    """Resolver backed by a dict that counts fetches per code."""

    def __init__(self, descriptions=None, error: Optional[Exception] = None):
        self.descriptions = dict(descriptions or {})
        self.error = error
        self.calls: list[str] = []

    async def fetch(self, code):
        self.calls.append(code)
        if self.error is not None:
            raise self.error
        return self.descriptions.get(code)


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cached_code_descriptions.json"


@pytest.fixture
def make_cache(cache_path):
    def _make(resolvers=None, store=None, **kwargs):
        return KnowledgeCache(store if store is not None else CodeStore(), path=cache_path, resolvers=resolvers, **kwargs)
    return _make


def make_question(qid=1, text="Which code applies?", options=None, confidence=None, answer="B", model="scripted-model"):
    question = Question(
        id=qid,
        text=text,
        options=options or {"A": "Option A", "B": "Option B", "C": "Option C", "D": "Option D"},
    )
    if confidence is not None:
        question.my_answer = Answer(selected_option=answer, confidence=confidence, reasoning="initial", model=model)
    return question


def verification_block(answer="B", confidence=8, summary="Matches the guideline."):
    return (
        "Option analysis goes here.\n\n"
        "```json\n"
        f'{{"reasoningSummary": "{summary}", "finalAnswer": "{answer}", "confidence": {confidence}}}\n'
        "```"
    )
