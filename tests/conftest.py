"""
Pytest configuration and fixtures for StudyQuiz tests.
"""
import sys
import os
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from core.config import settings  # noqa: E402
from schemas.quiz import Quiz  # noqa: E402


class InMemoryRedis:
    """Test double for the handful of redis.asyncio calls the services make."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.published = []
        self.fail_next = 0
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RedisConnectionError("redis unavailable")

    async def set(self, key, value, ex=None):
        self._maybe_fail()
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def get(self, key):
        self._maybe_fail()
        return self.data.get(key)

    async def delete(self, *keys):
        self._maybe_fail()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def publish(self, channel, message):
        self._maybe_fail()
        self.published.append((channel, message))
        return 0


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms=1_700_000_000_000):
        self.now = start_ms

    def __call__(self):
        return self.now

    def advance(self, seconds=0, hours=0):
        self.now += int((seconds + hours * 3600) * 1000)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "PERSISTENCE_RETRY_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "PERSISTENCE_MAX_RETRIES", 2)


@pytest.fixture
def redis():
    return InMemoryRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def choice_question():
    return {
        "type": "multipleChoice",
        "question": "What is 2+2?",
        "options": ["3", "4", "5", "6"],
        "correctAnswer": 1,
        "explanation": "Two plus two is four."
    }


@pytest.fixture
def short_answer_question():
    return {
        "type": "shortAnswer",
        "question": "What is the capital of France?",
        "answers": ["Paris"],
        "explanation": "Paris has been the capital since 987."
    }


@pytest.fixture
def matching_question():
    return {
        "type": "matching",
        "question": "Match the letters to numbers",
        "pairs": [
            {"term": "A", "definition": "1"},
            {"term": "B", "definition": "2"},
            {"term": "C", "definition": "3"}
        ],
        "explanation": "A=1, B=2, C=3"
    }


@pytest.fixture
def puzzle_question():
    return {
        "type": "puzzle",
        "question": "Solve 2x + 4 = 10",
        "steps": [
            {"prompt": "Subtract 4 from both sides", "answer": "2x = 6", "hint": "10 - 4"},
            {"prompt": "Divide by 2", "answer": "x = 3"}
        ],
        "explanation": "x = 3"
    }


@pytest.fixture
def mixed_quiz(choice_question, short_answer_question, matching_question, puzzle_question):
    return Quiz.from_document({
        "title": "Mixed quiz",
        "questions": [choice_question, short_answer_question, matching_question, puzzle_question],
    }, quiz_id="quiz-1")


@pytest.fixture
def choice_quiz():
    """Five choice questions; the correct option of question i is i % 4."""
    questions = [
        {
            "type": "multipleChoice",
            "question": f"Question {i}?",
            "options": ["a", "b", "c", "d"],
            "correctAnswer": i % 4,
        }
        for i in range(5)
    ]
    return Quiz.from_document({"title": "Five questions", "questions": questions}, quiz_id="quiz-5")
