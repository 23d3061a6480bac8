from sqlalchemy import Column, Integer, String, JSON, DateTime, Index
from models.base import Base
from utils.clock import utcnow


class QuizResult(Base):
    """Append-only record of a finished attempt."""
    __tablename__ = "quiz_results"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), index=True, nullable=False)
    quiz_id = Column(String(36), index=True, nullable=False)
    title = Column(String(255), nullable=False, default="")
    score = Column(Integer, nullable=False)
    total_questions = Column(Integer, nullable=False)
    time_spent = Column(Integer, nullable=False)  # seconds
    answers = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

# History page lists a user's results newest first
Index("idx_results_user_created", QuizResult.user_id, QuizResult.created_at)
