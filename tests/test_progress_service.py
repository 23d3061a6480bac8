import json

import pytest

from core.exceptions import PersistenceFailed
from schemas.progress import AnswerRecord
from services.progress_service import ProgressService


@pytest.fixture
def progress(redis, clock):
    return ProgressService(redis, clock=clock)


@pytest.mark.asyncio
async def test_save_then_load_returns_same_snapshot(progress, redis, clock):
    answers = [AnswerRecord(question_index=2, answer="paris"), AnswerRecord(question_index=0, answer=1)]
    saved = await progress.save("user-1", "quiz-1", answers, cursor=3)

    loaded = await progress.load("user-1", "quiz-1")

    assert loaded == saved
    assert [a.question_index for a in loaded.answers] == [0, 2]
    assert loaded.current_question_index == 3
    assert redis.expiry[ProgressService.key("user-1", "quiz-1")] == 24 * 3600


@pytest.mark.asyncio
async def test_snapshot_older_than_window_is_ignored(progress, clock):
    await progress.save("user-1", "quiz-1", [AnswerRecord(question_index=0, answer=1)], cursor=0)

    clock.advance(hours=23)
    assert await progress.load("user-1", "quiz-1") is not None

    clock.advance(hours=1)
    assert await progress.load("user-1", "quiz-1") is None


@pytest.mark.asyncio
async def test_malformed_snapshot_is_treated_as_absent(progress, redis):
    redis.data[ProgressService.key("user-1", "quiz-1")] = "{not json"
    assert await progress.load("user-1", "quiz-1") is None

    redis.data[ProgressService.key("user-1", "quiz-1")] = json.dumps({"quizId": "quiz-1"})
    assert await progress.load("user-1", "quiz-1") is None


@pytest.mark.asyncio
async def test_snapshot_for_another_quiz_is_ignored(progress, redis, clock):
    redis.data[ProgressService.key("user-1", "quiz-1")] = json.dumps(
        {"quizId": "quiz-2", "answers": [], "lastUpdated": clock(), "currentQuestionIndex": 0}
    )
    assert await progress.load("user-1", "quiz-1") is None


@pytest.mark.asyncio
async def test_guest_calls_never_touch_the_store(progress, redis):
    assert await progress.save(None, "quiz-1", [], cursor=0) is None
    assert await progress.load(None, "quiz-1") is None
    await progress.clear(None, "quiz-1")
    assert await progress.save("user-1", None, [], cursor=0) is None
    assert redis.calls == 0


@pytest.mark.asyncio
async def test_transient_failures_are_retried(progress, redis):
    redis.fail_next = 2
    snapshot = await progress.save("user-1", "quiz-1", [], cursor=0)
    assert snapshot is not None
    assert redis.calls == 3


@pytest.mark.asyncio
async def test_persistent_failure_raises_after_bounded_retries(progress, redis):
    redis.fail_next = 10
    with pytest.raises(PersistenceFailed):
        await progress.save("user-1", "quiz-1", [], cursor=0)
    assert redis.calls == 3


@pytest.mark.asyncio
async def test_clear_removes_snapshot(progress):
    await progress.save("user-1", "quiz-1", [], cursor=0)
    await progress.clear("user-1", "quiz-1")
    assert await progress.load("user-1", "quiz-1") is None
