import json
import uuid
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from core.exceptions import MalformedQuestion
from core.logger import logger
from models.quiz import Quiz as QuizRecord
from schemas.progress import QuizResult
from schemas.question import dump_question
from schemas.quiz import Quiz

QUIZ_CHANNEL = "studyquiz:quiz:{quiz_id}"


def new_quiz_id() -> str:
    return str(uuid.uuid4())


def record_to_quiz(record: QuizRecord) -> Quiz:
    """Validate a stored quiz document. Raises MalformedQuestion instead of patching bad data."""
    return Quiz.from_document(
        {
            "title": record.title,
            "questions": record.questions_json,
            "difficulty": record.difficulty,
            "createdAt": record.created_at,
            "sourceQuizId": record.source_quiz_id,
        },
        quiz_id=record.id,
    )


class QuizService:
    def __init__(self, db: AsyncSession, redis=None):
        self.db = db
        self.redis = redis

    async def save_quiz(self, user_id: str, quiz: Quiz) -> Quiz:
        """Store a quiz document for the user and return it with its new id."""
        quiz_id = quiz.id or new_quiz_id()
        record = QuizRecord(
            id=quiz_id,
            user_id=user_id,
            title=quiz.title,
            questions_json=[dump_question(q) for q in quiz.questions],
            difficulty=quiz.difficulty,
            source_quiz_id=quiz.source_quiz_id,
        )
        self.db.add(record)
        await self.db.commit()
        logger.info("Quiz saved", user_id=user_id, quiz_id=quiz_id, title=quiz.title,
                    questions=len(quiz.questions))
        return quiz.model_copy(update={"id": quiz_id})

    async def get_record(self, quiz_id: str) -> Optional[QuizRecord]:
        result = await self.db.execute(select(QuizRecord).filter(QuizRecord.id == quiz_id))
        return result.scalar_one_or_none()

    async def get_quiz(self, quiz_id: str, user_id: str) -> Optional[Quiz]:
        """The user's own quiz, validated. Other users' quizzes read as missing."""
        record = await self.get_quiz_by_id_and_user(quiz_id, user_id)
        if not record:
            return None
        try:
            return record_to_quiz(record)
        except MalformedQuestion as e:
            logger.error("Stored quiz failed validation", quiz_id=quiz_id, error=str(e))
            raise

    async def get_quiz_by_id_and_user(self, quiz_id: str, user_id: str) -> Optional[QuizRecord]:
        """Get a specific quiz ensuring it belongs to the user."""
        result = await self.db.execute(
            select(QuizRecord).filter(QuizRecord.id == quiz_id, QuizRecord.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_user_quizzes(self, user_id: str) -> List[QuizRecord]:
        result = await self.db.execute(
            select(QuizRecord).filter(QuizRecord.user_id == user_id).order_by(QuizRecord.created_at.desc())
        )
        return result.scalars().all()

    async def update_quiz(self, quiz_id: str, user_id: str, quiz: Quiz) -> bool:
        """Replace title and questions of an existing quiz and notify subscribers."""
        record = await self.get_quiz_by_id_and_user(quiz_id, user_id)
        if not record:
            return False

        record.title = quiz.title
        record.questions_json = [dump_question(q) for q in quiz.questions]
        record.difficulty = quiz.difficulty
        await self.db.commit()
        logger.info("Quiz updated", quiz_id=quiz_id, user_id=user_id)

        await self.publish(quiz.model_copy(update={"id": quiz_id}))
        return True

    async def mark_in_progress(self, quiz_id: str) -> None:
        record = await self.get_record(quiz_id)
        if not record or record.in_progress or record.completed:
            return
        record.in_progress = True
        await self.db.commit()

    async def mark_completed(self, quiz_id: str, result: QuizResult) -> bool:
        record = await self.get_record(quiz_id)
        if not record:
            return False
        record.completed = True
        record.in_progress = False
        record.results = {
            "quizId": quiz_id,
            "score": result.score,
            "totalQuestions": result.total_questions,
            "answers": [a.model_dump(by_alias=True) for a in result.answers],
            "timeSpent": result.time_spent,
        }
        await self.db.commit()
        logger.info("Quiz marked completed", quiz_id=quiz_id, score=result.score)
        return True

    async def delete_quiz(self, quiz_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            delete(QuizRecord).where(QuizRecord.id == quiz_id, QuizRecord.user_id == user_id)
        )
        await self.db.commit()
        success = result.rowcount > 0
        logger.info("Quiz deleted", quiz_id=quiz_id, user_id=user_id, success=success)
        return success

    async def publish(self, quiz: Quiz) -> None:
        """Push the full quiz document to live sessions of this quiz."""
        if not self.redis or not quiz.id:
            return
        channel = QUIZ_CHANNEL.format(quiz_id=quiz.id)
        await self.redis.publish(channel, json.dumps(quiz.to_document()))
        logger.debug("Quiz update published", quiz_id=quiz.id)

    async def subscribe(self, quiz_id: str) -> AsyncIterator[Quiz]:
        """Yield full quiz states as they are published, in delivery order."""
        pubsub = self.redis.pubsub()
        channel = QUIZ_CHANNEL.format(quiz_id=quiz_id)
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield Quiz.from_document(json.loads(message["data"]), quiz_id=quiz_id)
                except (ValueError, MalformedQuestion) as e:
                    logger.warning("Ignoring malformed quiz update", quiz_id=quiz_id, error=str(e))
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
