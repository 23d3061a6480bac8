import asyncio
import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import (
    IncompleteSubmission,
    InvalidSessionState,
    MalformedQuestion,
    NoRemediationNeeded,
    PersistenceFailed,
)
from schemas.progress import AnswerRecord
from schemas.quiz import Quiz
from services.evaluator import evaluate
from services.progress_service import ProgressService
from services.session_service import QuizSessionController, SessionState


class FakeSessionFactory:
    """Stands in for AsyncSessionLocal: each call yields the same mocked session."""

    def __init__(self):
        self.db = MagicMock()
        self.opened = 0

    def __call__(self):
        self.opened += 1
        return self

    async def __aenter__(self):
        return self.db

    async def __aexit__(self, *exc):
        return False


@pytest.fixture
def progress(redis, clock):
    return ProgressService(redis, clock=clock)


@pytest.fixture
def controller(choice_quiz, progress, clock):
    return QuizSessionController(choice_quiz, user_id="user-1", progress=progress, clock=clock)


async def answer_all(controller, answers):
    for value in answers:
        await controller.submit_answer(value)
        await controller.go_next()


def test_malformed_quiz_is_rejected_before_session_exists():
    with pytest.raises(MalformedQuestion):
        QuizSessionController({"title": "Bad", "questions": [{"type": "essay", "question": "?"}]})


@pytest.mark.asyncio
async def test_remediation_contains_only_wrong_questions_in_order(controller):
    await controller.start()
    # Correct option of question i is i % 4; questions 1 and 3 are answered wrong
    await answer_all(controller, [0, 0, 2, 0, 0])

    assert controller.state == SessionState.COMPLETED
    result = await controller.finalize_and_summarize()
    assert result.score == 3
    assert [o.is_correct for o in result.answers] == [True, False, True, False, True]

    practice = await controller.derive_remediation_quiz()

    assert [q.question for q in practice.questions] == ["Question 1?", "Question 3?"]
    assert practice.id is not None and practice.id != "quiz-5"
    assert practice.source_quiz_id == "quiz-5"
    assert practice.title == "Practice Quiz: Five questions"
    assert controller.state == SessionState.REVIEWING_RESULTS


@pytest.mark.asyncio
async def test_no_remediation_when_everything_is_correct(controller):
    await controller.start()
    await answer_all(controller, [0, 1, 2, 3, 0])

    await controller.finalize_and_summarize()
    with pytest.raises(NoRemediationNeeded):
        await controller.derive_remediation_quiz()
    assert controller.state == SessionState.COMPLETED


@pytest.mark.asyncio
async def test_remediation_requires_a_finished_attempt(controller):
    await controller.start()
    with pytest.raises(InvalidSessionState):
        await controller.derive_remediation_quiz()


@pytest.mark.asyncio
async def test_second_submission_for_same_question_is_rejected(controller):
    await controller.start()
    first = await controller.submit_answer(0)

    with pytest.raises(IncompleteSubmission):
        await controller.submit_answer(1)

    assert controller.ledger.get(0) == first
    assert controller.answered_count == 1


@pytest.mark.asyncio
async def test_submit_before_start_is_invalid(controller):
    with pytest.raises(InvalidSessionState):
        await controller.submit_answer(0)


@pytest.mark.asyncio
async def test_answers_and_cursor_are_mirrored_to_progress(controller, progress):
    await controller.start()
    await controller.submit_answer(0)
    await controller.go_next()
    await controller.flush()

    snapshot = await progress.load("user-1", "quiz-5")
    assert [a.question_index for a in snapshot.answers] == [0]
    assert snapshot.current_question_index == 1


@pytest.mark.asyncio
async def test_persistence_failure_does_not_block_the_learner(controller, redis):
    await controller.start()
    redis.fail_next = 1000

    await answer_all(controller, [0, 1, 2, 3, 0])
    result = await controller.finalize_and_summarize()

    assert isinstance(controller.last_persistence_error, PersistenceFailed)
    assert controller.answered_count == 5
    assert result.score == 5


@pytest.mark.asyncio
async def test_restoring_a_complete_ledger_goes_straight_to_completed(choice_quiz, progress, clock):
    answers = [AnswerRecord(question_index=i, answer=0) for i in range(5)]
    await progress.save("user-1", "quiz-5", answers, cursor=4)

    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress, clock=clock)
    state = await controller.start()

    assert state == SessionState.COMPLETED
    assert controller.ledger.is_evaluated()
    practice = await controller.derive_remediation_quiz()
    assert len(practice.questions) == 3


@pytest.mark.asyncio
async def test_partial_progress_restores_answers_and_cursor(choice_quiz, progress, clock):
    await progress.save("user-1", "quiz-5", [AnswerRecord(question_index=0, answer=0)], cursor=1)

    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress, clock=clock)
    await controller.start()

    assert controller.state == SessionState.IN_PROGRESS
    assert controller.cursor == 1
    assert controller.is_answered(0)


@pytest.mark.asyncio
async def test_stale_progress_starts_fresh(choice_quiz, progress, clock):
    await progress.save("user-1", "quiz-5", [AnswerRecord(question_index=0, answer=0)], cursor=1)
    clock.advance(hours=25)

    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress, clock=clock)
    await controller.start()

    assert controller.cursor == 0
    assert controller.answered_count == 0


@pytest.mark.asyncio
async def test_restore_can_be_skipped(choice_quiz, progress, clock):
    await progress.save("user-1", "quiz-5", [AnswerRecord(question_index=0, answer=0)], cursor=1)

    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress, clock=clock)
    await controller.start(restore=False)

    assert controller.answered_count == 0


@pytest.mark.asyncio
async def test_guest_session_never_touches_the_store(choice_quiz, progress, redis, clock):
    controller = QuizSessionController(choice_quiz, user_id=None, progress=progress, clock=clock)
    await controller.start()
    await answer_all(controller, [0, 1, 2, 3, 0])
    await controller.finalize_and_summarize()

    assert redis.calls == 0


@pytest.mark.asyncio
async def test_navigation_stays_in_bounds(controller):
    await controller.start()
    assert await controller.go_previous() == 0
    for _ in range(10):
        await controller.go_next()
    assert controller.cursor == 4
    await controller.flush()


@pytest.mark.asyncio
async def test_finalize_is_idempotent_and_measures_elapsed_time(controller, clock):
    await controller.start()
    clock.advance(seconds=90)
    await answer_all(controller, [0, 1, 2, 3, 0])

    result = await controller.finalize_and_summarize()
    clock.advance(seconds=30)

    assert result.time_spent == 90
    assert await controller.finalize_and_summarize() is result


@pytest.mark.asyncio
async def test_finalize_early_counts_unanswered_as_incorrect(controller):
    await controller.start()
    await controller.submit_answer(0)

    result = await controller.finalize_and_summarize()

    assert result.score == 1
    assert result.total_questions == 5
    assert result.percentage == 20
    assert len((await controller.derive_remediation_quiz()).questions) == 4


@pytest.mark.asyncio
async def test_matching_answer_uses_presented_slot_order(mixed_quiz):
    controller = QuizSessionController(mixed_quiz, rng=random.Random(3))
    await controller.start()
    await controller.go_next()
    await controller.go_next()

    order = controller.present_matching()
    # Map each term to the slot currently showing its own definition
    mapping = {term: order.index(term) for term in range(3)}
    record = await controller.submit_answer(mapping)

    assert record.answer.slot_order == order
    assert controller.present_matching() == order


@pytest.mark.asyncio
async def test_partial_matching_is_rejected(mixed_quiz):
    controller = QuizSessionController(mixed_quiz)
    await controller.start()
    await controller.go_next()
    await controller.go_next()

    controller.present_matching()
    with pytest.raises(IncompleteSubmission):
        await controller.submit_answer({0: 0, 1: 1})
    assert not controller.is_answered(2)


@pytest.mark.asyncio
async def test_puzzle_counts_only_first_attempt_per_step(mixed_quiz):
    controller = QuizSessionController(mixed_quiz)
    await controller.start()
    for _ in range(3):
        await controller.go_next()

    first = await controller.attempt_puzzle_step("2x = 6")
    assert first == {"step": 0, "correct": True, "completed": False, "hint": None}

    miss = await controller.attempt_puzzle_step("x = 4")
    assert miss["correct"] is False and miss["step"] == 1

    done = await controller.attempt_puzzle_step("x = 3")
    assert done["completed"] is True

    record = controller.ledger.get(3)
    assert record.answer == [True, False]


@pytest.mark.asyncio
async def test_wrong_puzzle_step_returns_hint(mixed_quiz):
    controller = QuizSessionController(mixed_quiz)
    await controller.start()
    outcome = await controller.attempt_puzzle_step("x = 1", index=3)

    assert outcome["hint"] == "10 - 4"
    assert controller.puzzle_status(3)["step"] == 0


@pytest.mark.asyncio
async def test_mixed_quiz_completes_with_every_variant(mixed_quiz):
    controller = QuizSessionController(mixed_quiz, rng=random.Random(1))
    await controller.start()

    await controller.submit_answer(1, index=0)
    await controller.submit_answer("  PARIS ", index=1)
    order = controller.present_matching(2)
    await controller.submit_answer({term: order.index(term) for term in range(3)}, index=2)
    await controller.attempt_puzzle_step("2x = 6", index=3)
    await controller.attempt_puzzle_step("x = 3", index=3)

    assert controller.state == SessionState.COMPLETED
    result = await controller.finalize_and_summarize()
    assert result.score == 4


@pytest.mark.asyncio
async def test_quiz_update_applies_only_before_any_answer(choice_quiz, clock):
    controller = QuizSessionController(choice_quiz, clock=clock)
    await controller.start()

    updated = Quiz.from_document({
        "title": "Updated",
        "questions": [{"type": "shortAnswer", "question": "New?", "answers": ["yes"]}],
    }, quiz_id="quiz-5")
    assert controller.apply_quiz_update(updated) is True
    assert controller.total_questions == 1

    await controller.submit_answer("yes")
    assert controller.apply_quiz_update(choice_quiz) is False
    assert controller.quiz.title == "Updated"


@pytest.mark.asyncio
async def test_quiz_update_for_another_quiz_is_ignored(choice_quiz, mixed_quiz):
    controller = QuizSessionController(choice_quiz)
    await controller.start()
    assert controller.apply_quiz_update(mixed_quiz) is False


@pytest.mark.asyncio
async def test_follow_updates_applies_pushed_states_in_order(choice_quiz):
    controller = QuizSessionController(choice_quiz)
    await controller.start()

    first = Quiz.from_document({"title": "One", "questions": [
        {"type": "shortAnswer", "question": "A?", "answers": ["a"]}]}, quiz_id="quiz-5")
    second = Quiz.from_document({"title": "Two", "questions": [
        {"type": "shortAnswer", "question": "B?", "answers": ["b"]}]}, quiz_id="quiz-5")

    async def updates():
        yield first
        yield second

    await controller.follow_updates(updates())
    assert controller.quiz.title == "Two"


@pytest.mark.asyncio
async def test_result_is_stored_and_progress_cleared(choice_quiz, progress, redis, clock):
    factory = FakeSessionFactory()
    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress,
                                       session_factory=factory, clock=clock)

    with patch("services.session_service.ResultService") as result_cls, \
            patch("services.session_service.QuizService") as quiz_cls:
        result_cls.return_value.save_result = AsyncMock(return_value="result-1")
        quiz_cls.return_value.mark_in_progress = AsyncMock(return_value=True)
        quiz_cls.return_value.mark_completed = AsyncMock(return_value=True)

        await controller.start()
        await answer_all(controller, [0, 1, 2, 3, 0])
        result = await controller.finalize_and_summarize()

    result_cls.return_value.save_result.assert_awaited_once_with("user-1", result)
    quiz_cls.return_value.mark_completed.assert_awaited_once_with("quiz-5", result)
    quiz_cls.return_value.mark_in_progress.assert_awaited_once_with("quiz-5")
    assert ProgressService.key("user-1", "quiz-5") not in redis.data


@pytest.mark.asyncio
async def test_result_store_failure_still_returns_result(choice_quiz, progress, clock):
    factory = FakeSessionFactory()
    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress,
                                       session_factory=factory, clock=clock)

    with patch("services.session_service.ResultService") as result_cls, \
            patch("services.session_service.QuizService") as quiz_cls:
        result_cls.return_value.save_result = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("db down"))
        )
        quiz_cls.return_value.mark_in_progress = AsyncMock(return_value=True)

        await controller.start()
        await answer_all(controller, [0, 1, 2, 3, 0])
        result = await controller.finalize_and_summarize()

    assert result.score == 5
    assert isinstance(controller.last_persistence_error, PersistenceFailed)


@pytest.mark.asyncio
async def test_navigation_does_not_wait_for_a_save_in_flight(controller, redis, progress):
    await controller.start()

    gate = asyncio.Event()
    store_set = redis.set

    async def slow_set(key, value, ex=None):
        await gate.wait()
        return await store_set(key, value, ex=ex)

    redis.set = slow_set

    submit = asyncio.create_task(controller.submit_answer(0))
    for _ in range(3):
        await asyncio.sleep(0)

    cursor = await asyncio.wait_for(controller.go_next(), timeout=0.5)
    assert cursor == 1
    assert not submit.done()

    gate.set()
    await submit
    await controller.flush()

    # The queued save wrote the latest cursor once the first one finished
    snapshot = await progress.load("user-1", "quiz-5")
    assert [a.question_index for a in snapshot.answers] == [0]
    assert snapshot.current_question_index == 1


@pytest.mark.asyncio
async def test_remediation_before_finalize_still_stores_the_result(choice_quiz, progress, clock):
    factory = FakeSessionFactory()
    controller = QuizSessionController(choice_quiz, user_id="user-1", progress=progress,
                                       session_factory=factory, clock=clock)

    with patch("services.session_service.ResultService") as result_cls, \
            patch("services.session_service.QuizService") as quiz_cls:
        result_cls.return_value.save_result = AsyncMock(return_value="result-1")
        quiz_cls.return_value.mark_in_progress = AsyncMock(return_value=True)
        quiz_cls.return_value.mark_completed = AsyncMock(return_value=True)

        await controller.start()
        await answer_all(controller, [0, 0, 2, 0, 0])
        practice = await controller.derive_remediation_quiz()
        result = await controller.finalize_and_summarize()

    assert controller.state == SessionState.REVIEWING_RESULTS
    assert controller.result is result
    assert result.score == 3
    assert len(practice.questions) == 2
    result_cls.return_value.save_result.assert_awaited_once_with("user-1", result)


@pytest.mark.asyncio
async def test_matching_order_is_stable_until_answered(mixed_quiz):
    controller = QuizSessionController(mixed_quiz, rng=random.Random(5))
    await controller.start()

    first = controller.present_matching(2)
    for _ in range(5):
        assert controller.present_matching(2) == first

    record = await controller.submit_answer({term: first.index(term) for term in range(3)}, index=2)

    assert record.answer.slot_order == first
    assert evaluate(mixed_quiz.questions[2], record.answer) is True


@pytest.mark.asyncio
async def test_puzzle_step_flags_must_be_booleans(mixed_quiz):
    controller = QuizSessionController(mixed_quiz)
    await controller.start()

    with pytest.raises(IncompleteSubmission):
        await controller.submit_answer(["false", "false"], index=3)
    assert not controller.is_answered(3)
