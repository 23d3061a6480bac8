class QuizEngineError(Exception):
    """Base class for errors raised by the quiz engine."""
    pass


class MalformedQuestion(QuizEngineError):
    """A question failed shape validation at ingestion."""

    def __init__(self, message: str, index: int = None):
        self.index = index
        if index is not None:
            message = f"Question {index}: {message}"
        super().__init__(message)


class IncompleteSubmission(QuizEngineError):
    """Submission rejected: partial answer or question already answered."""
    pass


class PersistenceFailed(QuizEngineError):
    """The document store did not accept or return the data."""
    pass


class GenerationFailed(QuizEngineError):
    """The question source could not produce a quiz."""
    pass


class NoRemediationNeeded(QuizEngineError):
    """Every answer was correct, so there is nothing to practice again."""
    pass


class InvalidSessionState(QuizEngineError):
    """Operation is not allowed in the session's current state."""
    pass
