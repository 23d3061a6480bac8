from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.exceptions import MalformedQuestion
from schemas.question import Question, describe_errors, dump_question, parse_questions
from utils.clock import utcnow

Difficulty = Literal["easy", "medium", "hard"]


class QuizSettings(BaseModel):
    """Generation settings chosen by the learner."""
    difficulty: Difficulty = "medium"
    question_count: int = Field(10, alias="questionCount", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class Quiz(BaseModel):
    """An ordered question set. The sequence is fixed once a session starts."""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(None, description="Absent for ephemeral (guest) quizzes")
    title: str = Field(..., min_length=1, max_length=255)
    questions: List[Question] = Field(..., min_length=1)
    difficulty: Optional[Difficulty] = None
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    source_quiz_id: Optional[str] = Field(None, alias="sourceQuizId")

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @classmethod
    def from_document(cls, data: Dict[str, Any], quiz_id: Optional[str] = None) -> "Quiz":
        """Build a quiz from a stored/received document. Any bad field raises MalformedQuestion."""
        if not isinstance(data, dict):
            raise MalformedQuestion(f"quiz must be an object, got {type(data).__name__}")
        questions = parse_questions(data.get("questions"))

        title = data.get("title") or "Untitled Quiz"
        if not isinstance(title, str):
            raise MalformedQuestion("quiz title must be a string")
        fields = {
            "id": quiz_id if quiz_id is not None else data.get("id"),
            "title": title[:255],
            "questions": questions,
            "difficulty": data.get("difficulty"),
            "source_quiz_id": data.get("sourceQuizId"),
        }
        created_at = data.get("createdAt")
        if created_at:
            fields["created_at"] = created_at
        try:
            return cls(**fields)
        except ValidationError as e:
            raise MalformedQuestion(f"invalid quiz document: {describe_errors(e)}") from e

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "questions": [dump_question(q) for q in self.questions],
            "difficulty": self.difficulty,
            "createdAt": self.created_at.isoformat(),
            "sourceQuizId": self.source_quiz_id,
        }
