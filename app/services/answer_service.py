# app/services/answer_service.py
import requests
from requests.exceptions import RequestException
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

PRO_MODE_INSTRUCTION = (
    "[Internal Instruction: Answer like an advanced AI agent, not a normal response. "
    "Be more sophisticated, detailed, and professional in your response.]"
)


def build_prompt(question: str, mode: str = "free") -> str:
    """Prompt sent to the answer backend; pro mode asks for a more thorough answer."""
    if mode == "pro":
        return f"{question}\n\n{PRO_MODE_INSTRUCTION}"
    return question


def generate_answer(question: str, mode: str = "free") -> str:
    """
    Generates an answer to a question via the configured answer backend.

    The backend is called with POST {prompt, mode} and must answer with a
    JSON object carrying an "answer" (or "text") string. Without a
    configured ANSWER_API_URL a local placeholder answer is returned.

    Args:
        question: The user's question.
        mode: "free" or "pro".

    Returns:
        The answer text.

    Raises:
        RequestException: If the HTTP request to the answer backend fails.
        ValueError: If the backend response carries no answer.
    """
    if not settings.ANSWER_API_URL:
        logger.debug("No ANSWER_API_URL configured, using placeholder answer")
        return f"{settings.SERVICE_ID} ({mode} mode) received your question: {question}"

    api_url = str(settings.ANSWER_API_URL)
    try:
        response = requests.post(
            api_url,
            json={"prompt": build_prompt(question, mode), "mode": mode},
            timeout=settings.ANSWER_TIMEOUT_SECONDS
        )
        response.raise_for_status()
        data = response.json()
    except RequestException as e:
        logger.error(f"Error calling answer backend ({api_url}): {e}")
        raise

    answer = None
    if isinstance(data, dict):
        answer = data.get("answer") or data.get("text")

    if not isinstance(answer, str) or not answer:
        logger.warning(f"Answer backend response has no answer: {type(data)}")
        raise ValueError("Answer backend response has no answer")

    return answer
