import uuid
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from core.logger import logger
from models.result import QuizResult as ResultRecord
from schemas.progress import QuizResult


class ResultService:
    """Append-only storage of finished attempts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save_result(self, user_id: str, result: QuizResult) -> str:
        result_id = str(uuid.uuid4())
        record = ResultRecord(
            id=result_id,
            user_id=user_id,
            quiz_id=result.quiz_id,
            title=result.title,
            score=result.score,
            total_questions=result.total_questions,
            time_spent=result.time_spent,
            answers=[a.model_dump(by_alias=True) for a in result.answers],
            created_at=result.completed_at,
        )
        self.db.add(record)
        await self.db.commit()
        logger.info("Quiz result saved", user_id=user_id, quiz_id=result.quiz_id,
                    result_id=result_id, score=result.score, total=result.total_questions)
        return result_id

    async def get_user_results(self, user_id: str, limit: int = 50) -> List[ResultRecord]:
        result = await self.db.execute(
            select(ResultRecord)
            .filter(ResultRecord.user_id == user_id)
            .order_by(ResultRecord.created_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def get_user_summary(self, user_id: str) -> dict:
        """Totals shown on the dashboard: attempts, average percentage and study time."""
        result = await self.db.execute(
            select(
                func.count(ResultRecord.id),
                func.coalesce(func.sum(ResultRecord.score), 0),
                func.coalesce(func.sum(ResultRecord.total_questions), 0),
                func.coalesce(func.sum(ResultRecord.time_spent), 0),
            ).filter(ResultRecord.user_id == user_id)
        )
        count, correct, total, time_spent = result.one()
        average = round(correct / total * 100) if total else 0
        return {
            "quizzes_taken": int(count),
            "average_score": average,
            "total_time_spent": int(time_spent),
        }
