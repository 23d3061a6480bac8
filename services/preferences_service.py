from typing import Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from core.logger import logger
from models.preferences import UserPreferences
from schemas.preferences import StudyPreferences


class PreferencesService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_record(self, user_id: str) -> Optional[UserPreferences]:
        result = await self.db.execute(select(UserPreferences).filter(UserPreferences.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_preferences(self, user_id: str) -> StudyPreferences:
        """Stored preferences, or the defaults when the user never saved any."""
        record = await self.get_record(user_id)
        if not record:
            return StudyPreferences()
        try:
            return StudyPreferences(
                questions_per_quiz=record.questions_per_quiz,
                difficulty=record.difficulty,
                review_mistakes=record.review_mistakes,
            )
        except ValidationError as e:
            # Limits may have tightened since the row was written
            logger.warning("Stored preferences no longer valid, using defaults", user_id=user_id,
                           error=str(e))
            return StudyPreferences()

    async def update_preferences(self, user_id: str, preferences: StudyPreferences) -> StudyPreferences:
        record = await self.get_record(user_id)
        if not record:
            record = UserPreferences(user_id=user_id)
            self.db.add(record)

        record.questions_per_quiz = preferences.questions_per_quiz
        record.difficulty = preferences.difficulty
        record.review_mistakes = preferences.review_mistakes
        await self.db.commit()
        logger.info("Preferences updated", user_id=user_id, **preferences.model_dump())
        return preferences
