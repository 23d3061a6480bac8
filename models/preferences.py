from sqlalchemy import Column, String, Integer, Boolean
from models.base import Base, TimestampMixin

class UserPreferences(Base, TimestampMixin):
    __tablename__ = "user_settings"

    user_id = Column(String(128), primary_key=True)
    questions_per_quiz = Column(Integer, default=5, nullable=False)
    difficulty = Column(String(16), default="medium", nullable=False)
    review_mistakes = Column(Boolean, default=True, nullable=False)
