"""
OpenAI generation backend.

Produces chat replies, images and narrated audio through the OpenAI SDK.
The client never retries on its own; retries are the caller's decision,
made safe by idempotency keys.
"""

import base64
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.token_counter import TokenUsage, estimate_text_tokens
from .backend import AudioGeneration, ChatTurn, GenerationError, ImageGeneration, TextGeneration

IMAGE_QUALITY = {
    "standard": "medium",
    "high_quality": "high",
}


class OpenAIGenerationBackend:
    """Generation backend backed by the OpenAI API.

    All failures are loud: API errors and timeouts propagate unchanged so
    that the orchestrator can roll the reservation back.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        temperature: float = 0.65,
        max_output_tokens: int = 1100,
    ):
        """Initialize the backend.

        Args:
            api_key: OpenAI API key (defaults to the OPENAI_API_KEY environment variable)
            timeout: Upper bound in seconds for a single generation call
            temperature: Sampling temperature for chat replies
            max_output_tokens: Reply length cap for chat replies

        Raises:
            ValueError: If timeout is not positive
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def generate_text(
        self,
        model: str,
        system_instruction: str,
        history: List[ChatTurn],
        message: str,
        use_search: bool,
    ) -> TextGeneration:
        """Generate a chat reply, optionally grounded with web search.

        Returns:
            TextGeneration with reply text, cited sources and token usage
        """
        conversation = [
            {"role": turn.role, "content": turn.content.strip()}
            for turn in history
            if turn.content.strip()
        ]
        conversation.append({"role": "user", "content": message.strip()})

        kwargs: Dict[str, Any] = {}
        if use_search:
            kwargs["tools"] = [{"type": "web_search_preview"}]

        response = self.client.responses.create(
            model=model,
            instructions=system_instruction,
            input=conversation,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            **kwargs
        )

        sources = []
        grounded_queries = 0
        for item in getattr(response, "output", None) or []:
            item_type = getattr(item, "type", None)
            if item_type == "web_search_call":
                grounded_queries += 1
            elif item_type == "message":
                for part in getattr(item, "content", None) or []:
                    for annotation in getattr(part, "annotations", None) or []:
                        if getattr(annotation, "type", None) != "url_citation":
                            continue
                        url = str(getattr(annotation, "url", "") or "")
                        if url:
                            sources.append({"title": str(getattr(annotation, "title", "") or "Source"), "uri": url})

        usage = getattr(response, "usage", None)
        return TextGeneration(
            text=(getattr(response, "output_text", "") or "").strip(),
            sources=sources,
            usage=TokenUsage.from_counts(
                getattr(usage, "input_tokens", 0),
                getattr(usage, "output_tokens", 0),
                grounded_queries,
            ),
        )

    def generate_image(self, model: str, prompt: str, quality: Optional[str] = None) -> ImageGeneration:
        """Generate one PNG image.

        Raises:
            GenerationError: If the response carries no image data
        """
        response = self.client.images.generate(
            model=model,
            prompt=prompt,
            n=1,
            quality=IMAGE_QUALITY.get(quality or "standard", "medium"),
        )
        data = getattr(response, "data", None) or []
        encoded = getattr(data[0], "b64_json", None) if data else None
        if not encoded:
            raise GenerationError("Image response did not contain binary image data")

        usage = getattr(response, "usage", None)
        return ImageGeneration(
            image_bytes=base64.b64decode(encoded),
            mime_type="image/png",
            usage=TokenUsage.from_counts(
                getattr(usage, "input_tokens", 0),
                getattr(usage, "output_tokens", 0),
            ),
        )

    def generate_audio(self, model: str, text: str, voice: str) -> AudioGeneration:
        """Narrate text as MP3.

        The speech endpoint reports no token usage, so input tokens are
        estimated from the text length.

        Raises:
            GenerationError: If the response carries no audio data
        """
        response = self.client.audio.speech.create(
            model=model,
            voice=voice,
            input=text.strip(),
            response_format="mp3",
        )
        audio_bytes = response.content
        if not audio_bytes:
            raise GenerationError("Speech response did not contain binary audio data")
        return AudioGeneration(
            audio_bytes=audio_bytes,
            mime_type="audio/mpeg",
            usage=TokenUsage(tokens_in=estimate_text_tokens(text), tokens_out=0),
        )
