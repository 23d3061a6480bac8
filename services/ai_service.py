import json
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from core.config import settings
from core.exceptions import GenerationFailed, MalformedQuestion
from core.logger import logger
from schemas.question import Question, parse_questions
from schemas.quiz import Quiz, QuizSettings

DIFFICULTY_DESCRIPTIONS = {
    "easy": "basic understanding of the material, suitable for beginners",
    "medium": "intermediate level that tests deeper comprehension",
    "hard": "challenging questions that require critical thinking and mastery of the subject",
}

SYSTEM_PROMPT = """You are a quiz generator for students. Create quiz questions from the given study material.

Return ONLY the following JSON format, nothing else:
{
  "questions": [
    {
      "type": "multipleChoice",
      "question": "Question text",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correctAnswer": 0,
      "explanation": "Why the correct option is correct"
    }
  ]
}

Rules:
1. Write clear, direct questions (max 20 words). Do not start with "Based on the study material".
2. Keep options brief (1-4 words) and distinct. Do not use Roman numerals.
3. "correctAnswer" is the 0-based index of the correct option.
4. Always include a short "explanation"."""


def derive_title(content: str) -> str:
    """Title from the first line of the material, at most 50 chars."""
    text = (content or "").strip()
    if not text:
        return "Study Quiz"
    first_line = text.split("\n")[0].strip()
    title = first_line[:50] if len(first_line) > 10 else text[:50]
    if len(title) < len(text):
        title += "..."
    return title


class AIService:
    """Generates quizzes from study text using the Groq chat completions API."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.api_key = settings.GROQ_API_KEY
        self.model = settings.GROQ_MODEL
        self.base_url = settings.GROQ_BASE_URL
        self.client = client

    def _log_rate_limits(self, headers: httpx.Headers):
        """Extract and log Groq rate limit information."""
        remaining_requests = headers.get("x-ratelimit-remaining-requests")
        remaining_tokens = headers.get("x-ratelimit-remaining-tokens")

        if remaining_requests or remaining_tokens:
            logger.info(
                "Groq rate limits",
                rem_req=remaining_requests,
                rem_tok=remaining_tokens,
                reset_req=headers.get("x-ratelimit-reset-requests"),
                reset_tok=headers.get("x-ratelimit-reset-tokens")
            )

    async def generate_quiz(self, content: str, quiz_settings: QuizSettings,
                            on_progress: Optional[Callable[[int, int], Awaitable[None]]] = None) -> Quiz:
        """
        Generate a quiz from plain study text.

        Raises GenerationFailed on any problem; never substitutes placeholder questions.
        """
        if not self.api_key:
            raise GenerationFailed("GROQ_API_KEY is not configured")
        if not content or not content.strip():
            raise GenerationFailed("Study material is empty")

        count = quiz_settings.question_count
        if count > settings.MAX_QUESTIONS_PER_QUIZ:
            raise GenerationFailed(f"At most {settings.MAX_QUESTIONS_PER_QUIZ} questions can be generated")

        material = content[:settings.MAX_CONTENT_CHARS]
        if len(content) > settings.MAX_CONTENT_CHARS:
            material += "..."

        user_prompt = (
            f"Difficulty: {quiz_settings.difficulty} "
            f"({DIFFICULTY_DESCRIPTIONS[quiz_settings.difficulty]}).\n"
            f"Generate exactly {count} unique questions.\n\n"
            f"Study material:\n\"{material}\""
        )

        if self.client is not None:
            raw = await self._request(self.client, user_prompt)
        else:
            async with httpx.AsyncClient(timeout=settings.GROQ_TIMEOUT_SECONDS) as client:
                raw = await self._request(client, user_prompt)

        questions = self._validate_questions(self._parse_response(raw))
        if len(questions) < count:
            raise GenerationFailed(f"Expected {count} questions, model returned {len(questions)}")
        questions = questions[:count]

        if on_progress:
            await on_progress(len(questions), count)

        logger.info("AI quiz generated", difficulty=quiz_settings.difficulty, total=len(questions))
        return Quiz(
            title=derive_title(content),
            questions=questions,
            difficulty=quiz_settings.difficulty,
        )

    async def _request(self, client: httpx.AsyncClient, user_prompt: str) -> str:
        try:
            response = await client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json"
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": user_prompt}
                    ],
                    "response_format": {"type": "json_object"},
                    "temperature": 0.7,
                    "max_completion_tokens": 4096
                }
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            logger.error("Groq request failed", error=repr(e))
            raise GenerationFailed(f"Generation request failed: {e}") from e

        self._log_rate_limits(response.headers)

        if response.status_code != 200:
            logger.error("Groq API error", status=response.status_code, error=response.text[:500])
            raise GenerationFailed(f"API error: {response.status_code}")

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationFailed("Unexpected response from the generation API") from e

    def _parse_response(self, content: str) -> List[Dict[str, Any]]:
        """Parse JSON from the model reply, tolerating a markdown code fence."""
        content = (content or "").strip()

        if "```" in content:
            start = content.find("```json")
            start = start + 7 if start != -1 else content.find("```") + 3
            end = content.find("```", start)
            content = content[start:end if end > start else None].strip()

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError:
            start = content.find("{")
            end = content.rfind("}")
            if start == -1 or end <= start:
                logger.error("Failed to parse AI response", content=content[:500])
                raise GenerationFailed("Could not parse questions from the model reply")
            try:
                parsed = json.loads(content[start:end + 1])
            except json.JSONDecodeError as e:
                logger.error("Failed to parse AI response", content=content[:500])
                raise GenerationFailed("Could not parse questions from the model reply") from e

        if isinstance(parsed, dict):
            parsed = parsed.get("questions")
        if not isinstance(parsed, list):
            raise GenerationFailed("Model reply did not contain a question list")
        return parsed

    def _validate_questions(self, questions: List[Dict[str, Any]]) -> List[Question]:
        """Run generated questions through ingestion validation. One bad question fails the batch."""
        try:
            return parse_questions(questions)
        except MalformedQuestion as e:
            logger.warning("Generated questions failed validation", error=str(e))
            raise GenerationFailed(f"Model produced an invalid question: {e}") from e
