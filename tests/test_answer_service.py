# tests/test_answer_service.py
"""
Tests for the answer backend client.
"""
import pytest
from unittest.mock import patch, MagicMock
from requests.exceptions import ConnectionError, HTTPError

from app.services.answer_service import PRO_MODE_INSTRUCTION, build_prompt, generate_answer

ANSWER_URL = "http://llm.local/answer"


def mock_response(payload, status_error=None):
    response = MagicMock()
    response.json.return_value = payload
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


class TestBuildPrompt:
    """Test prompt construction."""

    def test_free_prompt_is_the_question(self):
        assert build_prompt("why?") == "why?"

    def test_pro_prompt_adds_instruction(self):
        """Pro mode asks for a more thorough answer."""
        prompt = build_prompt("why?", mode="pro")
        assert prompt.startswith("why?")
        assert prompt.endswith(PRO_MODE_INSTRUCTION)


class TestGenerateAnswer:
    """Test the answer backend call."""

    @patch("app.services.answer_service.settings")
    def test_placeholder_without_backend(self, mock_settings):
        """Without a backend a placeholder answer names the service and mode."""
        mock_settings.ANSWER_API_URL = None
        mock_settings.SERVICE_ID = "agent1"

        answer = generate_answer("why?", mode="pro")

        assert answer == "agent1 (pro mode) received your question: why?"

    @patch("app.services.answer_service.requests.post")
    @patch("app.services.answer_service.settings")
    def test_backend_answer(self, mock_settings, mock_post):
        """The backend answer is returned."""
        mock_settings.ANSWER_API_URL = ANSWER_URL
        mock_settings.ANSWER_TIMEOUT_SECONDS = 30
        mock_post.return_value = mock_response({"answer": "because"})

        assert generate_answer("why?") == "because"

        mock_post.assert_called_once_with(
            ANSWER_URL,
            json={"prompt": "why?", "mode": "free"},
            timeout=30,
        )

    @patch("app.services.answer_service.requests.post")
    @patch("app.services.answer_service.settings")
    def test_text_field_accepted(self, mock_settings, mock_post):
        """A backend answering with "text" is accepted."""
        mock_settings.ANSWER_API_URL = ANSWER_URL
        mock_post.return_value = mock_response({"text": "because"})

        assert generate_answer("why?") == "because"

    @patch("app.services.answer_service.requests.post")
    @patch("app.services.answer_service.settings")
    def test_missing_answer(self, mock_settings, mock_post):
        """A response without an answer raises ValueError."""
        mock_settings.ANSWER_API_URL = ANSWER_URL
        mock_post.return_value = mock_response({"choices": []})

        with pytest.raises(ValueError):
            generate_answer("why?")

    @patch("app.services.answer_service.requests.post")
    @patch("app.services.answer_service.settings")
    def test_connection_error_propagates(self, mock_settings, mock_post):
        """Transport failures propagate to the caller."""
        mock_settings.ANSWER_API_URL = ANSWER_URL
        mock_post.side_effect = ConnectionError("refused")

        with pytest.raises(ConnectionError):
            generate_answer("why?")

    @patch("app.services.answer_service.requests.post")
    @patch("app.services.answer_service.settings")
    def test_http_error_propagates(self, mock_settings, mock_post):
        """Error statuses from the backend propagate."""
        mock_settings.ANSWER_API_URL = ANSWER_URL
        mock_post.return_value = mock_response({}, status_error=HTTPError("500"))

        with pytest.raises(HTTPError):
            generate_answer("why?")
