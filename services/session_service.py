import asyncio
import random
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.exceptions import (
    IncompleteSubmission,
    InvalidSessionState,
    NoRemediationNeeded,
    PersistenceFailed,
)
from core.logger import logger
from schemas.progress import AnswerRecord, MatchingAnswer, QuestionOutcome, QuizResult
from schemas.question import ChoiceQuestion, MatchingQuestion, PuzzleQuestion
from schemas.quiz import Quiz
from services.evaluator import check_matching_complete, check_puzzle_step, coerce_answer, make_slot_order
from services.ledger import AnswerLedger
from services.progress_service import ProgressService
from services.quiz_service import QuizService
from services.result_service import ResultService
from utils.clock import now_ms


class SessionState(str, Enum):
    LOADING = "loading"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVIEWING_RESULTS = "reviewing_results"


class QuizSessionController:
    """
    Walks one learner through one quiz attempt.

    Persistence is best effort: every store failure is logged and kept in
    ``last_persistence_error`` but never stops the learner from answering or
    finishing. Guests (``user_id is None``) never touch the stores.
    """

    def __init__(
        self,
        quiz: Union[Quiz, Dict[str, Any]],
        user_id: Optional[str] = None,
        progress: Optional[ProgressService] = None,
        session_factory=None,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        # Malformed question sets are rejected here, before any state exists
        self.quiz = quiz if isinstance(quiz, Quiz) else Quiz.from_document(quiz)
        self.user_id = user_id
        self.progress = progress
        self.session_factory = session_factory
        self.clock = clock
        self.rng = rng or random.Random()

        self.session_id = str(uuid.uuid4())
        self.state = SessionState.LOADING
        self.cursor = 0
        self.ledger = AnswerLedger(self.quiz.questions, clock=clock)
        self.started_at: Optional[int] = None
        self.last_activity = clock()
        self.last_persistence_error: Optional[Exception] = None

        self._result: Optional[QuizResult] = None
        self._slot_orders: Dict[int, List[int]] = {}
        self._puzzle_progress: Dict[int, Dict[str, Any]] = {}
        self._save_task: Optional[asyncio.Task] = None
        self._save_pending = False
        self._marked_in_progress = False

    @property
    def persists(self) -> bool:
        return bool(self.user_id and self.quiz.id)

    @property
    def total_questions(self) -> int:
        return len(self.quiz.questions)

    @property
    def answered_count(self) -> int:
        return len(self.ledger)

    @property
    def current_question(self):
        return self.quiz.questions[self.cursor]

    @property
    def result(self) -> Optional[QuizResult]:
        return self._result

    def is_answered(self, index: int) -> bool:
        return self.ledger.has(index)

    def _touch(self):
        self.last_activity = self.clock()

    def _require(self, *states: SessionState):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidSessionState(f"Session is {self.state.value}; expected one of: {allowed}")

    # === Loading ===

    async def start(self, restore: bool = True) -> SessionState:
        """Leave LOADING, restoring a recent progress snapshot when one exists."""
        self._require(SessionState.LOADING)
        self.started_at = self.clock()
        self._touch()

        snapshot = None
        if restore and self.persists and self.progress:
            try:
                snapshot = await self.progress.load(self.user_id, self.quiz.id)
            except PersistenceFailed as e:
                self.last_persistence_error = e
                logger.warning("Progress restore failed, starting fresh",
                               user_id=self.user_id, quiz_id=self.quiz.id, error=str(e))

        if snapshot:
            self.ledger = AnswerLedger.from_records(self.quiz.questions, snapshot.answers, clock=self.clock)
            self.cursor = min(snapshot.current_question_index, self.total_questions - 1)
            logger.info("Progress restored", user_id=self.user_id, quiz_id=self.quiz.id,
                        answered=len(self.ledger), cursor=self.cursor)

        if self.ledger.is_complete(self.total_questions):
            self.ledger.evaluate_all()
            self.state = SessionState.COMPLETED
        else:
            self.state = SessionState.IN_PROGRESS

        logger.info("Quiz session started", session_id=self.session_id, user_id=self.user_id,
                    quiz_id=self.quiz.id, total=self.total_questions, state=self.state.value)
        return self.state

    # === Answering ===

    def present_matching(self, index: Optional[int] = None) -> List[int]:
        """Shuffle definition slots for a matching question and remember the order shown."""
        index = self.cursor if index is None else index
        question = self.quiz.questions[index]
        if not isinstance(question, MatchingQuestion):
            raise InvalidSessionState(f"Question {index} is not a matching question")
        if self.ledger.has(index):
            return list(self.ledger.get(index).answer.slot_order)
        if index in self._slot_orders:
            # Keep the order the learner first saw until the question is answered
            return list(self._slot_orders[index])
        order = make_slot_order(question, self.rng)
        self._slot_orders[index] = order
        return order

    def _prepare_answer(self, index: int, value: Any) -> Any:
        question = self.quiz.questions[index]

        if isinstance(question, MatchingQuestion):
            if isinstance(value, dict) and "mapping" not in value:
                # Bare {term: slot} mapping against the last order we presented
                if index not in self._slot_orders:
                    raise IncompleteSubmission("Matching slots were never presented for this question")
                value = {"mapping": value, "slotOrder": self._slot_orders[index]}
            return check_matching_complete(question, value)

        if isinstance(question, PuzzleQuestion):
            steps = coerce_answer(question, value)
            if len(steps) != len(question.steps):
                raise IncompleteSubmission(
                    f"Puzzle needs {len(question.steps)} step results, got {len(steps)}"
                )
            return steps

        if isinstance(question, ChoiceQuestion):
            if isinstance(value, bool) or not isinstance(value, int):
                raise IncompleteSubmission("Choice answer must be an option index")
            return value

        answer = coerce_answer(question, value)
        if not answer.strip():
            raise IncompleteSubmission("Short answer must not be empty")
        return answer

    async def submit_answer(self, value: Any, index: Optional[int] = None) -> AnswerRecord:
        """Record the answer for the current question. Submission is final per question."""
        self._require(SessionState.IN_PROGRESS)
        index = self.cursor if index is None else index
        if not 0 <= index < self.total_questions:
            raise IncompleteSubmission(f"Question index {index} out of range")
        if self.ledger.has(index):
            raise IncompleteSubmission(f"Question {index} has already been answered")

        answer = self._prepare_answer(index, value)
        record = self.ledger.record(index, answer)
        self._slot_orders.pop(index, None)
        self._puzzle_progress.pop(index, None)
        self._touch()
        logger.info("Answer recorded", session_id=self.session_id, quiz_id=self.quiz.id,
                    index=index, answered=len(self.ledger), total=self.total_questions)

        if self.ledger.is_complete(self.total_questions):
            self.ledger.evaluate_all()
            self.state = SessionState.COMPLETED
            record = self.ledger.get(index)
            logger.info("All questions answered", session_id=self.session_id, score=self.ledger.score())

        await self._persist()
        return record

    def puzzle_status(self, index: Optional[int] = None) -> Dict[str, Any]:
        index = self.cursor if index is None else index
        question = self.quiz.questions[index]
        if not isinstance(question, PuzzleQuestion):
            raise InvalidSessionState(f"Question {index} is not a puzzle")
        return self._puzzle_progress.setdefault(
            index, {"step": 0, "results": [None] * len(question.steps)}
        )

    async def attempt_puzzle_step(self, text: str, index: Optional[int] = None) -> Dict[str, Any]:
        """
        Grade the learner's answer for the current puzzle step.

        Only the first graded attempt of a step counts toward correctness; the
        learner may retry locally, but must answer correctly to move on. The
        puzzle is submitted to the ledger once its last step is solved.
        """
        self._require(SessionState.IN_PROGRESS)
        index = self.cursor if index is None else index
        if self.ledger.has(index):
            raise IncompleteSubmission(f"Question {index} has already been answered")

        question = self.quiz.questions[index]
        status = self.puzzle_status(index)
        step = status["step"]
        is_correct = check_puzzle_step(question, step, text)
        if status["results"][step] is None:
            status["results"][step] = is_correct
        self._touch()

        outcome = {"step": step, "correct": is_correct, "completed": False, "hint": None}
        if not is_correct:
            outcome["hint"] = question.steps[step].hint
            return outcome

        if step + 1 < len(question.steps):
            status["step"] = step + 1
            return outcome

        outcome["completed"] = True
        await self.submit_answer(list(status["results"]), index)
        return outcome

    async def abandon_puzzle(self, index: Optional[int] = None) -> AnswerRecord:
        """Submit the puzzle as it stands; unsolved steps count as incorrect."""
        index = self.cursor if index is None else index
        status = self.puzzle_status(index)
        return await self.submit_answer([bool(r) for r in status["results"]], index)

    # === Navigation ===

    async def go_next(self) -> int:
        return await self._move(1)

    async def go_previous(self) -> int:
        return await self._move(-1)

    async def _move(self, delta: int) -> int:
        self._require(SessionState.IN_PROGRESS, SessionState.COMPLETED)
        target = self.cursor + delta
        if not 0 <= target < self.total_questions:
            return self.cursor
        self.cursor = target
        self._touch()
        if self._result is None:
            # Never wait on the store here; a running save picks up the new cursor
            self._schedule_save()
        return self.cursor

    # === Persistence ===

    def _schedule_save(self) -> Optional[asyncio.Task]:
        """Queue a snapshot save. At most one save runs at a time per session."""
        if not self.persists or not self.progress:
            return None
        self._save_pending = True
        if self._save_task is None or self._save_task.done():
            self._save_task = asyncio.create_task(self._drain_saves())
        return self._save_task

    async def _drain_saves(self):
        while self._save_pending:
            self._save_pending = False
            # Read state at save time so the snapshot is always the latest one
            records, cursor = self.ledger.records(), self.cursor
            try:
                await self.progress.save(self.user_id, self.quiz.id, records, cursor)
                self.last_persistence_error = None
            except PersistenceFailed as e:
                self.last_persistence_error = e
                logger.warning("Progress save failed; continuing in memory",
                               session_id=self.session_id, quiz_id=self.quiz.id, error=str(e))
            await self._mark_in_progress()

    async def _persist(self):
        """Save the snapshot and wait for it. Never raises on store failure."""
        task = self._schedule_save()
        if task is not None:
            await asyncio.shield(task)

    async def flush(self):
        """Wait until no snapshot save is pending."""
        while self._save_task is not None and not self._save_task.done():
            await asyncio.shield(self._save_task)

    async def _mark_in_progress(self):
        if not self._marked_in_progress and self.state == SessionState.IN_PROGRESS and self.session_factory:
            self._marked_in_progress = True
            try:
                async with self.session_factory() as db:
                    await asyncio.wait_for(
                        QuizService(db).mark_in_progress(self.quiz.id),
                        timeout=settings.PERSISTENCE_TIMEOUT_SECONDS,
                    )
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
                logger.warning("Could not flag quiz as in progress", quiz_id=self.quiz.id, error=repr(e))

    # === Completion ===

    def _outcomes(self) -> List[QuestionOutcome]:
        outcomes = []
        for index in range(self.total_questions):
            record = self.ledger.get(index)
            outcomes.append(QuestionOutcome(question_index=index, is_correct=bool(record and record.is_correct)))
        return outcomes

    async def finalize_and_summarize(self) -> QuizResult:
        """Compute the result once, store it best effort and return it."""
        if self._result is not None:
            return self._result
        self._require(SessionState.IN_PROGRESS, SessionState.COMPLETED)

        self.ledger.evaluate_all()
        self.state = SessionState.COMPLETED
        outcomes = self._outcomes()
        elapsed_ms = self.clock() - (self.started_at if self.started_at is not None else self.clock())

        self._result = QuizResult(
            quiz_id=self.quiz.id,
            user_id=self.user_id,
            title=self.quiz.title,
            score=sum(1 for o in outcomes if o.is_correct),
            total_questions=self.total_questions,
            answers=outcomes,
            time_spent=max(0, elapsed_ms // 1000),
        )
        self._touch()
        logger.info("Quiz finished", session_id=self.session_id, user_id=self.user_id, quiz_id=self.quiz.id,
                    score=self._result.score, total=self._result.total_questions,
                    time_spent=self._result.time_spent)

        # A late snapshot save must not land after the snapshot is cleared
        await self.flush()
        await self._store_result(self._result)
        return self._result

    async def _store_result(self, result: QuizResult):
        if not self.persists:
            return

        if self.session_factory:
            try:
                async with self.session_factory() as db:
                    await asyncio.wait_for(
                        ResultService(db).save_result(self.user_id, result),
                        timeout=settings.PERSISTENCE_TIMEOUT_SECONDS,
                    )
                    await asyncio.wait_for(
                        QuizService(db).mark_completed(self.quiz.id, result),
                        timeout=settings.PERSISTENCE_TIMEOUT_SECONDS,
                    )
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
                self.last_persistence_error = PersistenceFailed(f"Result not stored: {e!r}")
                logger.error("Failed to store quiz result", quiz_id=self.quiz.id, user_id=self.user_id, error=repr(e))

        if self.progress:
            try:
                await self.progress.clear(self.user_id, self.quiz.id)
            except PersistenceFailed as e:
                logger.warning("Could not clear progress snapshot", quiz_id=self.quiz.id, error=str(e))

    async def derive_remediation_quiz(self) -> Quiz:
        """
        Build a fresh quiz holding only the questions answered incorrectly.

        The attempt is finalized first if it was not already, so its result is
        always computed and stored before the session moves to review.
        """
        self._require(SessionState.COMPLETED, SessionState.REVIEWING_RESULTS)
        if self._result is None:
            await self.finalize_and_summarize()

        wrong = [o.question_index for o in self._outcomes() if not o.is_correct]
        if not wrong:
            raise NoRemediationNeeded("Every question was answered correctly")

        self.state = SessionState.REVIEWING_RESULTS
        practice = Quiz(
            id=str(uuid.uuid4()),
            title=f"Practice Quiz: {self.quiz.title}"[:255],
            questions=[self.quiz.questions[i].model_copy(deep=True) for i in wrong],
            difficulty=self.quiz.difficulty,
            source_quiz_id=self.quiz.id,
        )
        logger.info("Remediation quiz derived", quiz_id=self.quiz.id, practice_quiz_id=practice.id,
                    questions=len(wrong))
        return practice

    # === Live updates ===

    def apply_quiz_update(self, quiz: Quiz) -> bool:
        """
        Replace the question set with a full quiz state pushed by the store.

        Ignored when it belongs to another quiz, when the attempt is no longer
        in progress, or when answers were already recorded against the old set.
        """
        if quiz.id != self.quiz.id:
            logger.warning("Ignoring update for another quiz", quiz_id=self.quiz.id, update_quiz_id=quiz.id)
            return False
        if self.state not in (SessionState.LOADING, SessionState.IN_PROGRESS):
            logger.info("Ignoring quiz update after completion", quiz_id=self.quiz.id, state=self.state.value)
            return False
        if len(self.ledger):
            logger.warning("Ignoring quiz update: answers already recorded", quiz_id=self.quiz.id,
                           answered=len(self.ledger))
            return False

        self.quiz = quiz
        self.ledger = AnswerLedger(quiz.questions, clock=self.clock)
        self.cursor = min(self.cursor, len(quiz.questions) - 1)
        self._slot_orders.clear()
        self._puzzle_progress.clear()
        logger.info("Quiz update applied", quiz_id=quiz.id, total=len(quiz.questions))
        return True

    async def follow_updates(self, updates: AsyncIterator[Quiz]):
        """Apply pushed quiz states in delivery order until the stream ends or is cancelled."""
        async for quiz in updates:
            self.apply_quiz_update(quiz)
