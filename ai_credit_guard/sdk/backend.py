"""
Generation backend contract.

Result types and the interface the orchestrator calls to produce text,
images and audio.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from ..core.token_counter import TokenUsage


class GenerationError(RuntimeError):
    """Raised when the backend answers without usable content."""


@dataclass(frozen=True)
class ChatTurn:
    role: str  # "user" or "assistant"
    content: str


@dataclass(frozen=True)
class TextGeneration:
    text: str
    usage: TokenUsage
    sources: List[Dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class ImageGeneration:
    image_bytes: bytes
    mime_type: str
    usage: TokenUsage


@dataclass(frozen=True)
class AudioGeneration:
    audio_bytes: bytes
    mime_type: str
    usage: TokenUsage


class GenerationBackend(Protocol):
    """External generative service. Any exception counts as a failed call."""

    def generate_text(
        self,
        model: str,
        system_instruction: str,
        history: List[ChatTurn],
        message: str,
        use_search: bool,
    ) -> TextGeneration:
        ...

    def generate_image(self, model: str, prompt: str, quality: Optional[str] = None) -> ImageGeneration:
        ...

    def generate_audio(self, model: str, text: str, voice: str) -> AudioGeneration:
        ...
