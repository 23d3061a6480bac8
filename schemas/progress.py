from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from utils.clock import now_ms, utcnow


class MatchingAnswer(BaseModel):
    """Submission for a matching question.

    ``mapping`` maps a term index to the slot the learner picked for it.
    ``slot_order[slot]`` is the original pair index whose definition that slot
    displayed when the learner answered.
    """
    model_config = ConfigDict(populate_by_name=True)

    mapping: Dict[int, int] = Field(default_factory=dict)
    slot_order: List[int] = Field(..., alias="slotOrder")


class AnswerRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_index: int = Field(..., alias="questionIndex", ge=0)
    answer: Any
    is_correct: Optional[bool] = Field(None, alias="isCorrect")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class SessionProgressSnapshot(BaseModel):
    """Persisted projection of a ledger plus the navigation cursor."""
    model_config = ConfigDict(populate_by_name=True)

    quiz_id: str = Field(..., alias="quizId")
    answers: List[AnswerRecord] = Field(default_factory=list)
    last_updated: int = Field(..., alias="lastUpdated", description="Epoch milliseconds")
    current_question_index: int = Field(0, alias="currentQuestionIndex", ge=0)

    @model_validator(mode="after")
    def _unique_indices(self):
        indices = [a.question_index for a in self.answers]
        if len(indices) != len(set(indices)):
            raise ValueError("duplicate questionIndex in answers")
        return self

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class QuestionOutcome(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_index: int = Field(..., alias="questionIndex")
    is_correct: bool = Field(..., alias="isCorrect")


class QuizResult(BaseModel):
    """Terminal summary of a completed attempt. Never edited after creation."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    quiz_id: Optional[str] = Field(None, alias="quizId")
    user_id: Optional[str] = Field(None, alias="userId")
    title: str = ""
    score: int = Field(..., ge=0)
    total_questions: int = Field(..., alias="totalQuestions", ge=1)
    answers: List[QuestionOutcome]
    time_spent: int = Field(..., alias="timeSpent", ge=0, description="Elapsed seconds")
    completed_at: datetime = Field(default_factory=utcnow, alias="completedAt")

    @property
    def percentage(self) -> int:
        return round(self.score / self.total_questions * 100)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
