from sqlalchemy import Column, String, JSON, Boolean, Index
from models.base import Base, TimestampMixin

class Quiz(Base, TimestampMixin):
    __tablename__ = "quizzes"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    questions_json = Column(JSON, nullable=False)
    difficulty = Column(String(16), nullable=True)

    # Set on practice quizzes built from the wrong answers of another attempt
    source_quiz_id = Column(String(36), nullable=True)

    in_progress = Column(Boolean, default=False, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    results = Column(JSON, nullable=True)

Index("idx_quizzes_user_created", Quiz.user_id, Quiz.created_at)
