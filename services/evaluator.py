"""
Correctness rules for each question variant.

All functions here are pure: they never touch the ledger, the store or the clock.
"""
import random
from typing import Any, List, Optional

from pydantic import ValidationError

from core.exceptions import IncompleteSubmission
from schemas.progress import MatchingAnswer
from schemas.question import (
    ChoiceQuestion,
    MatchingQuestion,
    PuzzleQuestion,
    Question,
    ShortAnswerQuestion,
)


def normalize_text(value: Any) -> str:
    return str(value).strip().lower()


def evaluate(question: Question, answer: Any) -> bool:
    """Return True if ``answer`` is a correct submission for ``question``."""
    if isinstance(question, ChoiceQuestion):
        return _evaluate_choice(question, answer)
    if isinstance(question, ShortAnswerQuestion):
        return _evaluate_short_answer(question, answer)
    if isinstance(question, MatchingQuestion):
        return _evaluate_matching(question, answer)
    if isinstance(question, PuzzleQuestion):
        return _evaluate_puzzle(question, answer)
    raise TypeError(f"Unsupported question variant: {type(question).__name__}")


def _evaluate_choice(question: ChoiceQuestion, answer: Any) -> bool:
    # bool is an int subclass; True must not count as option 1
    if isinstance(answer, bool) or not isinstance(answer, int):
        return False
    return answer == question.correct_answer


def _evaluate_short_answer(question: ShortAnswerQuestion, answer: Any) -> bool:
    if answer is None:
        return False
    submitted = normalize_text(answer)
    return any(normalize_text(accepted) == submitted for accepted in question.answers)


def _evaluate_matching(question: MatchingQuestion, answer: Any) -> bool:
    try:
        matching = _as_matching_answer(answer)
    except IncompleteSubmission:
        return False

    pair_count = len(question.pairs)
    if len(matching.mapping) != pair_count or len(matching.slot_order) != pair_count:
        return False

    for term_index in range(pair_count):
        slot = matching.mapping.get(term_index)
        if slot is None or not 0 <= slot < pair_count:
            return False
        if matching.slot_order[slot] != term_index:
            return False
    return True


def _evaluate_puzzle(question: PuzzleQuestion, answer: Any) -> bool:
    if not isinstance(answer, (list, tuple)) or len(answer) != len(question.steps):
        return False
    return all(step is True for step in answer)


def check_puzzle_step(question: PuzzleQuestion, step_index: int, text: Any) -> bool:
    """Grade a single puzzle step attempt."""
    if not 0 <= step_index < len(question.steps):
        raise IndexError(f"Puzzle has no step {step_index}")
    return normalize_text(text) == normalize_text(question.steps[step_index].answer)


def make_slot_order(question: MatchingQuestion, rng: Optional[random.Random] = None) -> List[int]:
    """Shuffle pair indices into display slots for one render of a matching question."""
    rng = rng or random.Random()
    order = list(range(len(question.pairs)))
    rng.shuffle(order)
    return order


def _as_matching_answer(answer: Any) -> MatchingAnswer:
    if isinstance(answer, MatchingAnswer):
        return answer
    if not isinstance(answer, dict):
        raise IncompleteSubmission("Matching answer must be an object with mapping and slotOrder")
    try:
        return MatchingAnswer.model_validate(answer)
    except ValidationError as e:
        raise IncompleteSubmission(f"Invalid matching answer: {e.error_count()} error(s)") from e


def check_matching_complete(question: MatchingQuestion, answer: Any) -> MatchingAnswer:
    """Reject partial or inconsistent matching submissions before they reach the ledger."""
    matching = _as_matching_answer(answer)
    pair_count = len(question.pairs)

    if sorted(matching.slot_order) != list(range(pair_count)):
        raise IncompleteSubmission("Slot order is not a permutation of the definitions")
    if len(matching.mapping) != pair_count:
        raise IncompleteSubmission(
            f"Matching needs {pair_count} pairings, got {len(matching.mapping)}"
        )
    if set(matching.mapping) != set(range(pair_count)):
        raise IncompleteSubmission("Every term must be matched exactly once")
    slots = list(matching.mapping.values())
    if len(set(slots)) != len(slots) or any(not 0 <= s < pair_count for s in slots):
        raise IncompleteSubmission("Each definition slot can be used only once")
    return matching


def coerce_answer(question: Question, answer: Any) -> Any:
    """Bring a raw (e.g. JSON-decoded) answer into the shape the evaluator expects."""
    if isinstance(question, MatchingQuestion):
        return _as_matching_answer(answer)
    if isinstance(question, PuzzleQuestion):
        if not isinstance(answer, (list, tuple)):
            raise IncompleteSubmission("Puzzle answer must be a list of step results")
        if not all(isinstance(step, bool) for step in answer):
            raise IncompleteSubmission("Puzzle step results must be true or false")
        return list(answer)
    if isinstance(question, ShortAnswerQuestion):
        if answer is None:
            raise IncompleteSubmission("Short answer must not be empty")
        return str(answer)
    return answer
