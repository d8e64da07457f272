"""
SDK for AI Credit Guard.

Generation backends called by the request orchestrator.
"""

from .backend import (
    AudioGeneration,
    ChatTurn,
    GenerationBackend,
    GenerationError,
    ImageGeneration,
    TextGeneration,
)
from .openai_backend import OpenAIGenerationBackend

__all__ = [
    "AudioGeneration",
    "ChatTurn",
    "GenerationBackend",
    "GenerationError",
    "ImageGeneration",
    "OpenAIGenerationBackend",
    "TextGeneration",
]
