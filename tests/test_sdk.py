"""
Unit tests for SDK layer.

Tests the OpenAI generation backend against a mocked client.
"""

import base64
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from ai_credit_guard.sdk.backend import ChatTurn, GenerationError
from ai_credit_guard.sdk.openai_backend import OpenAIGenerationBackend


def _text_response(text="Answer", output=None, input_tokens=12, output_tokens=7):
    return SimpleNamespace(
        output_text=text,
        output=output or [],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


class TestOpenAIGenerationBackend:
    """Test OpenAIGenerationBackend wrapper."""

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_init_disables_retries(self, mock_openai_class):
        """The client never retries on its own."""
        OpenAIGenerationBackend(api_key="sk-test", timeout=12.5)
        mock_openai_class.assert_called_once_with(api_key="sk-test", timeout=12.5, max_retries=0)

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_init_rejects_bad_timeout(self, mock_openai_class):
        with pytest.raises(ValueError, match="timeout"):
            OpenAIGenerationBackend(timeout=0)

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_text(self, mock_openai_class):
        """History and message are sent as conversation input."""
        mock_client = Mock()
        mock_client.responses.create.return_value = _text_response("  Hello there  ")
        mock_openai_class.return_value = mock_client

        backend = OpenAIGenerationBackend()
        result = backend.generate_text(
            model="gpt-4.1-mini",
            system_instruction="Be kind",
            history=[ChatTurn("user", "hi"), ChatTurn("assistant", "  "), ChatTurn("assistant", "hello")],
            message="  what now? ",
            use_search=False,
        )

        assert result.text == "Hello there"
        assert result.usage.tokens_in == 12
        assert result.usage.tokens_out == 7
        assert result.usage.grounded_queries == 0
        assert result.sources == []

        kwargs = mock_client.responses.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4.1-mini"
        assert kwargs["instructions"] == "Be kind"
        assert kwargs["input"] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "what now?"},
        ]
        assert "tools" not in kwargs

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_text_with_search(self, mock_openai_class):
        """Web search calls are counted and citations become sources."""
        citation = SimpleNamespace(type="url_citation", url="https://example.org/a", title="Paper A")
        untitled = SimpleNamespace(type="url_citation", url="https://example.org/b", title=None)
        other = SimpleNamespace(type="file_citation", url="ignored")
        output = [
            SimpleNamespace(type="web_search_call"),
            SimpleNamespace(type="web_search_call"),
            SimpleNamespace(
                type="message",
                content=[SimpleNamespace(annotations=[citation, untitled, other])],
            ),
        ]
        mock_client = Mock()
        mock_client.responses.create.return_value = _text_response(output=output)
        mock_openai_class.return_value = mock_client

        result = OpenAIGenerationBackend().generate_text("gpt-4.1", "sys", [], "q", use_search=True)

        assert mock_client.responses.create.call_args.kwargs["tools"] == [{"type": "web_search_preview"}]
        assert result.usage.grounded_queries == 2
        assert result.sources == [
            {"title": "Paper A", "uri": "https://example.org/a"},
            {"title": "Source", "uri": "https://example.org/b"},
        ]

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_text_missing_usage(self, mock_openai_class):
        """Missing usage figures count as zero."""
        mock_client = Mock()
        mock_client.responses.create.return_value = SimpleNamespace(output_text="ok", output=[], usage=None)
        mock_openai_class.return_value = mock_client

        result = OpenAIGenerationBackend().generate_text("m", "s", [], "q", use_search=False)
        assert result.usage.total_tokens == 0

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_api_errors_propagate(self, mock_openai_class):
        """Backend failures are never swallowed."""
        mock_client = Mock()
        mock_client.responses.create.side_effect = Exception("API Error")
        mock_openai_class.return_value = mock_client

        with pytest.raises(Exception, match="API Error"):
            OpenAIGenerationBackend().generate_text("m", "s", [], "q", use_search=False)

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_image(self, mock_openai_class):
        mock_client = Mock()
        mock_client.images.generate.return_value = SimpleNamespace(
            data=[SimpleNamespace(b64_json=base64.b64encode(b"png-bytes").decode())],
            usage=SimpleNamespace(input_tokens=30, output_tokens=1000),
        )
        mock_openai_class.return_value = mock_client

        result = OpenAIGenerationBackend().generate_image("gpt-image-1", "a muscle", quality="high_quality")

        assert result.image_bytes == b"png-bytes"
        assert result.mime_type == "image/png"
        assert result.usage.tokens_out == 1000
        mock_client.images.generate.assert_called_once_with(
            model="gpt-image-1", prompt="a muscle", n=1, quality="high"
        )

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_image_without_data(self, mock_openai_class):
        mock_client = Mock()
        mock_client.images.generate.return_value = SimpleNamespace(data=[], usage=None)
        mock_openai_class.return_value = mock_client

        with pytest.raises(GenerationError):
            OpenAIGenerationBackend().generate_image("gpt-image-1-mini", "x")

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_audio(self, mock_openai_class):
        mock_client = Mock()
        mock_client.audio.speech.create.return_value = SimpleNamespace(content=b"mp3-bytes")
        mock_openai_class.return_value = mock_client

        result = OpenAIGenerationBackend().generate_audio("gpt-4o-mini-tts", "Twelve chars", "alloy")

        assert result.audio_bytes == b"mp3-bytes"
        assert result.mime_type == "audio/mpeg"
        assert result.usage.tokens_in == 3
        mock_client.audio.speech.create.assert_called_once_with(
            model="gpt-4o-mini-tts", voice="alloy", input="Twelve chars", response_format="mp3"
        )

    @patch('ai_credit_guard.sdk.openai_backend.OpenAI')
    def test_generate_audio_empty(self, mock_openai_class):
        mock_client = Mock()
        mock_client.audio.speech.create.return_value = SimpleNamespace(content=b"")
        mock_openai_class.return_value = mock_client

        with pytest.raises(GenerationError):
            OpenAIGenerationBackend().generate_audio("m", "text", "alloy")
