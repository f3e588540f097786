"""Request and result types exchanged with the generation provider adapter."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class ModelFamily(str, Enum):
    """Request/response shape family, decided from the model name before any call."""

    IMAGEN = "imagen"  # Vertex :predict, legacy instances/predictions shape
    GEMINI = "gemini"  # Vertex :generateContent, conversational parts shape
    REPLICATE = "replicate"  # Replicate prediction, URL output


class ResolutionTier(str, Enum):
    """Output resolution class, ordered 1K < 2K < 4K."""

    R1K = "1K"
    R2K = "2K"
    R4K = "4K"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def parse(cls, value: Optional[str], default: "ResolutionTier") -> "ResolutionTier":
        if not value:
            return default
        try:
            return cls(value.strip().upper())
        except ValueError:
            return default


_TIER_RANK = {ResolutionTier.R1K: 1, ResolutionTier.R2K: 2, ResolutionTier.R4K: 3}


@dataclass
class GenerationRequest:
    """Normalized arguments for one generation call."""

    image_url: str
    prompt: str
    strength: Optional[float] = None
    resolution: Optional[str] = None
    aspect_ratio: Optional[str] = None
    reference_image_urls: list[str] = field(default_factory=list)
    seed: Optional[int] = None
    model: Optional[str] = None
    category: Optional[str] = None


@dataclass
class GenerationSuccess:
    """Successful generation: inline bytes or a fetchable URL."""

    mime_type: str = "image/png"
    image_bytes: Optional[bytes] = None
    image_url: Optional[str] = None
    model: Optional[str] = None
    upscaled: bool = False
    raw: Any = None

    ok = True


@dataclass
class GenerationFailure:
    """Failed generation with the provider's message preserved."""

    error: str
    raw: Any = None
    retryable: bool = False

    ok = False


GenerationResult = Union[GenerationSuccess, GenerationFailure]
