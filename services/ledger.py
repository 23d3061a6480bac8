from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import IncompleteSubmission
from core.logger import logger
from schemas.progress import AnswerRecord
from schemas.question import Question
from services.evaluator import coerce_answer, evaluate
from utils.clock import now_ms


class AnswerLedger:
    """In-memory answers for one quiz attempt, keyed by explicit question index."""

    def __init__(self, questions: List[Question], clock: Callable[[], int] = now_ms):
        self.questions = questions
        self._clock = clock
        self._records: Dict[int, AnswerRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def has(self, index: int) -> bool:
        return index in self._records

    def get(self, index: int) -> Optional[AnswerRecord]:
        return self._records.get(index)

    def record(self, index: int, raw_answer: Any) -> AnswerRecord:
        """Insert or replace the answer for ``index`` and mark it unevaluated."""
        if not 0 <= index < len(self.questions):
            raise IndexError(f"Question index {index} out of range")

        existing = self._records.get(index)
        if existing is not None and existing.answer == raw_answer:
            return existing

        record = AnswerRecord(question_index=index, answer=raw_answer, is_correct=None, updated_at=self._clock())
        self._records[index] = record
        return record

    def records(self) -> List[AnswerRecord]:
        return [self._records[i] for i in sorted(self._records)]

    def evaluate_all(self) -> List[AnswerRecord]:
        """Evaluate every record against its question. Recomputes on each call."""
        evaluated = []
        for index in sorted(self._records):
            record = self._records[index]
            is_correct = evaluate(self.questions[index], record.answer)
            record = record.model_copy(update={"is_correct": is_correct})
            self._records[index] = record
            evaluated.append(record)
        return evaluated

    def is_complete(self, total_questions: int) -> bool:
        return len(self._records) == total_questions and all(
            i in self._records for i in range(total_questions)
        )

    def is_evaluated(self) -> bool:
        return all(r.is_correct is not None for r in self._records.values())

    def score(self) -> int:
        return sum(1 for r in self._records.values() if r.is_correct)

    def incorrect_indices(self) -> List[int]:
        return [i for i in sorted(self._records) if self._records[i].is_correct is False]

    def to_documents(self) -> List[Dict[str, Any]]:
        return [r.to_document() for r in self.records()]

    @classmethod
    def from_records(cls, questions: List[Question], records: Iterable[AnswerRecord],
                     clock: Callable[[], int] = now_ms) -> "AnswerLedger":
        """Rebuild a ledger from persisted records, dropping ones that no longer fit the quiz."""
        ledger = cls(questions, clock=clock)
        for record in records:
            index = record.question_index
            if not 0 <= index < len(questions):
                logger.warning("Dropping answer for unknown question", index=index, total=len(questions))
                continue
            try:
                answer = coerce_answer(questions[index], record.answer)
            except IncompleteSubmission as e:
                logger.warning("Dropping unreadable stored answer", index=index, error=str(e))
                continue
            ledger._records[index] = record.model_copy(update={"answer": answer})
        return ledger
