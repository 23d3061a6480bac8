from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from contextlib import asynccontextmanager
import asyncio
import hmac
import hashlib
import time
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
import structlog

from core.config import settings
from core.exceptions import (
    GenerationFailed,
    IncompleteSubmission,
    InvalidSessionState,
    MalformedQuestion,
    NoRemediationNeeded,
    PersistenceFailed,
)
from db.session import AsyncSessionLocal, close_redis, get_db, get_redis
from schemas.preferences import StudyPreferences
from schemas.question import ChoiceQuestion, MatchingQuestion, PuzzleQuestion, dump_question
from schemas.quiz import Difficulty, Quiz, QuizSettings
from services.ai_service import AIService
from services.preferences_service import PreferencesService
from services.progress_service import ProgressService
from services.quiz_service import QuizService, record_to_quiz
from services.result_service import ResultService
from services.session_registry import session_registry
from services.session_service import QuizSessionController, SessionState

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    session_registry.clear()
    await close_redis()


API_DESCRIPTION = """
## StudyQuiz API

Generate quizzes from study material, take them with resumable progress, and
review results.

### Authentication

Send `X-Auth-Token: {user_id}:{timestamp}:{signature}`. Requests without a
token run as a guest: quizzes and progress are kept in memory only.
"""

TAGS_METADATA = [
    {"name": "quizzes", "description": "Generate and manage stored quizzes."},
    {"name": "sessions", "description": "Take a quiz: answer, navigate, finish, practice wrong answers."},
    {"name": "results", "description": "History of finished attempts."},
    {"name": "settings", "description": "Study preferences used as generation defaults."},
]

app = FastAPI(
    title="StudyQuiz API",
    description=API_DESCRIPTION,
    version="1.0.0",
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# === Error mapping ===

ERROR_STATUS = {
    MalformedQuestion: 422,
    IncompleteSubmission: 409,
    InvalidSessionState: 409,
    NoRemediationNeeded: 409,
    GenerationFailed: 502,
    PersistenceFailed: 503,
}


def _register_error(exc_class, status_code):
    async def handler(request: Request, exc: Exception):
        logger.info("Request refused", path=request.url.path, error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})
    app.add_exception_handler(exc_class, handler)


for _exc, _status in ERROR_STATUS.items():
    _register_error(_exc, _status)


# === Pydantic Models ===

class GenerateRequest(BaseModel):
    """Request body for quiz generation."""
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(..., description="Plain study text", min_length=1)
    difficulty: Optional[Difficulty] = Field(None, description="easy, medium or hard; defaults to the user's preference")
    question_count: Optional[int] = Field(
        None, alias="questionCount", ge=1, description="Number of questions; defaults to the user's preference"
    )


class QuizListItem(BaseModel):
    id: str = Field(..., description="Unique quiz ID")
    title: str = Field(..., description="Quiz title")
    questions_count: int = Field(..., description="Number of questions in the quiz")
    completed: bool = Field(..., description="Whether an attempt has been finished")
    created_at: datetime = Field(..., description="Quiz creation timestamp")


class StartSessionRequest(BaseModel):
    """Start (or resume) a session for a stored quiz, or run an inline quiz as a guest."""
    model_config = ConfigDict(populate_by_name=True)

    quiz_id: Optional[str] = Field(None, alias="quizId")
    quiz: Optional[Dict[str, Any]] = Field(None, description="Inline quiz document")
    restore: bool = Field(True, description="Resume saved progress when available")


class AnswerRequest(BaseModel):
    answer: Any = Field(..., description="Option index, text, {term: slot} mapping or step results")
    index: Optional[int] = Field(None, description="Question index; defaults to the current question")


class PuzzleStepRequest(BaseModel):
    text: str = Field(..., description="Answer for the current puzzle step")


class SuccessResponse(BaseModel):
    status: str = Field(default="success", description="Operation status")


# === Auth ===

def sign_token(user_id: str, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    data = f"{user_id}:{timestamp}"
    signature = hmac.new(settings.SECRET_KEY.encode(), data.encode(), hashlib.sha256).hexdigest()
    return f"{data}:{signature}"


def verify_token(token: str) -> Optional[str]:
    """
    Verify a signed token.
    Format: {user_id}:{timestamp}:{signature}
    """
    if not token:
        return None

    parts = token.split(':')
    if len(parts) != 3:
        return None

    user_id, timestamp_str, signature = parts
    if not user_id or not timestamp_str.isdigit():
        return None

    if int(time.time()) - int(timestamp_str) > settings.TOKEN_TTL_SECONDS:
        logger.warning("Token expired", user_id=user_id)
        return None

    data = f"{user_id}:{timestamp_str}"
    expected_signature = hmac.new(settings.SECRET_KEY.encode(), data.encode(), hashlib.sha256).hexdigest()
    if hmac.compare_digest(expected_signature, signature):
        return user_id

    logger.warning("Token signature mismatch", user_id=user_id)
    return None


def get_current_user(x_auth_token: Optional[str] = Header(None)) -> Optional[str]:
    """Signed-in user id, or None for guests. A bad token is an error, not a guest."""
    if not x_auth_token:
        return None
    user_id = verify_token(x_auth_token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def require_user(user_id: Optional[str] = Depends(get_current_user)) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Sign in required")
    return user_id


# === Presentation helpers ===

def present_question(controller: QuizSessionController, index: int) -> Dict[str, Any]:
    """Question as shown to the learner: no answer keys until the attempt is complete."""
    question = controller.quiz.questions[index]
    answered = controller.is_answered(index)
    doc: Dict[str, Any] = {
        "index": index,
        "type": question.type,
        "question": question.question,
        "answered": answered,
    }

    if isinstance(question, ChoiceQuestion):
        doc["options"] = question.options
    elif isinstance(question, MatchingQuestion):
        order = controller.present_matching(index)
        doc["terms"] = [p.term for p in question.pairs]
        doc["definitions"] = [question.pairs[i].definition for i in order]
    elif isinstance(question, PuzzleQuestion):
        doc["steps"] = [{"prompt": s.prompt, "hint": s.hint} for s in question.steps]
        if not answered and controller.state == SessionState.IN_PROGRESS:
            doc["currentStep"] = controller.puzzle_status(index)["step"]

    if controller.state != SessionState.IN_PROGRESS:
        record = controller.ledger.get(index)
        doc["isCorrect"] = bool(record and record.is_correct)
        doc["explanation"] = question.explanation
        doc["solution"] = dump_question(question)
    return doc


def session_view(controller: QuizSessionController) -> Dict[str, Any]:
    view = {
        "sessionId": controller.session_id,
        "quizId": controller.quiz.id,
        "title": controller.quiz.title,
        "state": controller.state.value,
        "cursor": controller.cursor,
        "totalQuestions": controller.total_questions,
        "answered": controller.answered_count,
        "question": present_question(controller, controller.cursor),
        "persistenceError": str(controller.last_persistence_error) if controller.last_persistence_error else None,
    }
    if controller.result:
        view["result"] = controller.result.to_document()
    return view


def get_session(session_id: str, user_id: Optional[str]) -> QuizSessionController:
    controller = session_registry.get(session_id)
    if not controller or controller.user_id != user_id:
        raise HTTPException(status_code=404, detail="Session not found")
    return controller


# === Quizzes ===

@app.post("/api/quizzes/generate", tags=["quizzes"], summary="Generate a quiz from study material")
async def generate_quiz(
    body: GenerateRequest,
    user_id: Optional[str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    preferences = await PreferencesService(db).get_preferences(user_id) if user_id else StudyPreferences()
    question_count = body.question_count or preferences.questions_per_quiz
    difficulty = body.difficulty or preferences.difficulty
    if question_count > settings.MAX_QUESTIONS_PER_QUIZ:
        raise HTTPException(status_code=400, detail=f"At most {settings.MAX_QUESTIONS_PER_QUIZ} questions")

    quiz = await AIService().generate_quiz(
        body.content,
        QuizSettings(difficulty=difficulty, question_count=question_count),
    )
    if user_id:
        quiz = await QuizService(db, redis=redis).save_quiz(user_id, quiz)
    return quiz.to_document()


@app.get("/api/quizzes", response_model=List[QuizListItem], tags=["quizzes"], summary="List my quizzes")
async def list_quizzes(user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    quizzes = await QuizService(db).get_user_quizzes(user_id)
    return [{
        "id": q.id,
        "title": q.title,
        "questions_count": len(q.questions_json or []),
        "completed": q.completed,
        "created_at": q.created_at
    } for q in quizzes]


@app.get("/api/quizzes/{quiz_id}", tags=["quizzes"], summary="Get quiz details")
async def get_quiz(quiz_id: str, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    record = await QuizService(db).get_quiz_by_id_and_user(quiz_id, user_id)
    if not record:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return record_to_quiz(record).to_document()


@app.delete("/api/quizzes/{quiz_id}", response_model=SuccessResponse, tags=["quizzes"], summary="Delete quiz")
async def delete_quiz(quiz_id: str, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    if not await QuizService(db).delete_quiz(quiz_id, user_id):
        raise HTTPException(status_code=404, detail="Quiz not found or unauthorized")
    return {"status": "success"}


# === Sessions ===

@app.post("/api/sessions", tags=["sessions"], summary="Start or resume a quiz session")
async def start_session(
    body: StartSessionRequest,
    user_id: Optional[str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    if body.quiz_id:
        # Stored quizzes are private to their owner
        if not user_id:
            raise HTTPException(status_code=401, detail="Sign in required")
        quiz = await QuizService(db).get_quiz(body.quiz_id, user_id)
        if not quiz:
            raise HTTPException(status_code=404, detail="Quiz not found")
    elif body.quiz:
        # Inline quizzes are ephemeral: no id, nothing persisted server-side
        quiz = Quiz.from_document({**body.quiz, "id": None})
    else:
        raise HTTPException(status_code=400, detail="Either quizId or quiz is required")

    controller = QuizSessionController(
        quiz,
        user_id=user_id,
        progress=ProgressService(redis),
        session_factory=AsyncSessionLocal,
    )
    await controller.start(restore=body.restore)

    listener = None
    if controller.persists:
        updates = QuizService(None, redis=redis).subscribe(quiz.id)
        listener = asyncio.create_task(controller.follow_updates(updates))
    session_registry.register(controller, listener)

    return session_view(controller)


@app.get("/api/sessions/{session_id}", tags=["sessions"], summary="Current session view")
async def read_session(session_id: str, user_id: Optional[str] = Depends(get_current_user)):
    return session_view(get_session(session_id, user_id))


@app.post("/api/sessions/{session_id}/answers", tags=["sessions"], summary="Submit an answer")
async def submit_answer(session_id: str, body: AnswerRequest, user_id: Optional[str] = Depends(get_current_user)):
    controller = get_session(session_id, user_id)
    await controller.submit_answer(body.answer, body.index)
    return session_view(controller)


@app.post("/api/sessions/{session_id}/puzzle-step", tags=["sessions"], summary="Answer the current puzzle step")
async def puzzle_step(session_id: str, body: PuzzleStepRequest, user_id: Optional[str] = Depends(get_current_user)):
    controller = get_session(session_id, user_id)
    outcome = await controller.attempt_puzzle_step(body.text)
    return {"outcome": outcome, "session": session_view(controller)}


@app.post("/api/sessions/{session_id}/next", tags=["sessions"], summary="Go to next question")
async def next_question(session_id: str, user_id: Optional[str] = Depends(get_current_user)):
    controller = get_session(session_id, user_id)
    await controller.go_next()
    return session_view(controller)


@app.post("/api/sessions/{session_id}/previous", tags=["sessions"], summary="Go to previous question")
async def previous_question(session_id: str, user_id: Optional[str] = Depends(get_current_user)):
    controller = get_session(session_id, user_id)
    await controller.go_previous()
    return session_view(controller)


@app.post("/api/sessions/{session_id}/finalize", tags=["sessions"], summary="Finish and get the result")
async def finalize(session_id: str, user_id: Optional[str] = Depends(get_current_user)):
    controller = get_session(session_id, user_id)
    result = await controller.finalize_and_summarize()
    return result.to_document()


@app.post("/api/sessions/{session_id}/remediation", tags=["sessions"], summary="Practice wrong answers")
async def remediation(
    session_id: str,
    user_id: Optional[str] = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    controller = get_session(session_id, user_id)
    practice = await controller.derive_remediation_quiz()
    if user_id:
        practice = await QuizService(db, redis=redis).save_quiz(user_id, practice)
    return practice.to_document()


# === Results ===

@app.get("/api/results", tags=["results"], summary="My finished attempts, newest first")
async def list_results(user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    results = await ResultService(db).get_user_results(user_id)
    return [{
        "id": r.id,
        "quizId": r.quiz_id,
        "title": r.title,
        "score": r.score,
        "totalQuestions": r.total_questions,
        "timeSpent": r.time_spent,
        "answers": r.answers,
        "createdAt": r.created_at,
    } for r in results]


@app.get("/api/results/summary", tags=["results"], summary="Dashboard totals")
async def results_summary(user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    return await ResultService(db).get_user_summary(user_id)


# === Settings ===

@app.get("/api/settings", tags=["settings"], summary="My study preferences")
async def read_settings(user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    preferences = await PreferencesService(db).get_preferences(user_id)
    return preferences.to_document()


@app.put("/api/settings", tags=["settings"], summary="Replace my study preferences")
async def update_settings(
    body: StudyPreferences,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    preferences = await PreferencesService(db).update_preferences(user_id, body)
    return preferences.to_document()
