from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.config import settings
from schemas.quiz import Difficulty


class StudyPreferences(BaseModel):
    """Per-user defaults for quiz generation and review."""
    model_config = ConfigDict(populate_by_name=True)

    questions_per_quiz: int = Field(
        default_factory=lambda: settings.DEFAULT_QUESTION_COUNT,
        alias="questionsPerQuiz",
        ge=1,
    )
    difficulty: Difficulty = Field(default_factory=lambda: settings.DEFAULT_DIFFICULTY)
    review_mistakes: bool = Field(True, alias="reviewMistakes", description="Offer a practice quiz of wrong answers")

    @field_validator("questions_per_quiz")
    @classmethod
    def _within_limit(cls, value: int) -> int:
        if value > settings.MAX_QUESTIONS_PER_QUIZ:
            raise ValueError(f"at most {settings.MAX_QUESTIONS_PER_QUIZ} questions per quiz")
        return value

    def to_document(self):
        return self.model_dump(by_alias=True)
