from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from core.exceptions import MalformedQuestion

# Type tags as stored in quiz documents
CHOICE = "multipleChoice"
SHORT_ANSWER = "shortAnswer"
MATCHING = "matching"
PUZZLE = "puzzle"


class QuestionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(..., description="Prompt shown to the learner", min_length=1)
    explanation: str = Field("", description="Shown after the question is answered")

    @field_validator("question")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be empty")
        return value


class ChoiceQuestion(QuestionBase):
    """Multiple-choice question with a single correct option."""
    type: Literal["multipleChoice"] = CHOICE
    options: List[str] = Field(..., min_length=1)
    correct_answer: int = Field(..., alias="correctAnswer", ge=0, description="Index of the correct option (0-based)")

    @model_validator(mode="after")
    def _correct_in_bounds(self):
        if self.correct_answer >= len(self.options):
            raise ValueError(
                f"correctAnswer {self.correct_answer} out of bounds for {len(self.options)} options"
            )
        return self


class ShortAnswerQuestion(QuestionBase):
    type: Literal["shortAnswer"] = SHORT_ANSWER
    answers: List[str] = Field(..., min_length=1, description="Acceptable answers, compared case-insensitively")

    @field_validator("answers")
    @classmethod
    def _has_usable_answer(cls, value: List[str]) -> List[str]:
        if not any(a.strip() for a in value):
            raise ValueError("at least one non-empty acceptable answer is required")
        return value


class MatchingPair(BaseModel):
    term: str = Field(..., min_length=1)
    definition: str = Field(..., min_length=1)


class MatchingQuestion(QuestionBase):
    type: Literal["matching"] = MATCHING
    pairs: List[MatchingPair] = Field(..., min_length=1)


class PuzzleStep(BaseModel):
    prompt: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    hint: Optional[str] = None


class PuzzleQuestion(QuestionBase):
    """Ordered steps; each step must be solved before moving to the next."""
    type: Literal["puzzle"] = PUZZLE
    steps: List[PuzzleStep] = Field(..., min_length=1)


Question = Annotated[
    Union[ChoiceQuestion, ShortAnswerQuestion, MatchingQuestion, PuzzleQuestion],
    Field(discriminator="type"),
]

_question_adapter = TypeAdapter(Question)


def describe_errors(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def parse_question(data: Any, index: int = None) -> Question:
    """Validate one raw question document. Unknown or missing type tags are rejected."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if not isinstance(data, dict):
        raise MalformedQuestion(f"expected an object, got {type(data).__name__}", index)
    try:
        return _question_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedQuestion(describe_errors(e), index) from e


def parse_questions(items: Any) -> List[Question]:
    """Validate a whole question set. One bad question rejects the set."""
    if not isinstance(items, (list, tuple)):
        raise MalformedQuestion("questions must be a list")
    if not items:
        raise MalformedQuestion("question set is empty")
    return [parse_question(item, i) for i, item in enumerate(items)]


def dump_question(question: Question) -> Dict[str, Any]:
    return question.model_dump(by_alias=True, mode="json")
