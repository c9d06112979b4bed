"""
Classify API Backend — Abstract Inference Backend Interface
===========================================================

What:  Abstract base class for the external AI service behind the gateway.
How:   Concrete implementations inherit from InferenceBackend and implement
       the probe methods and classify_image().
Who:   OllamaService implements it; InferenceGateway uses the probes for
       status reporting; ClassificationService submits classify_image()
       calls through the gateway.

Contract:
    - Probes (is_reachable, is_model_ready, availability) answer True/False
      and never raise. availability() answers both in one round-trip where
      the backend allows it.
    - classify_image() re-checks both probes before contacting the generate
      endpoint, so work that sat in the queue is validated against the
      backend's current state rather than its state at submission time.
    - All implementation-specific failures surface as InferenceError
      subclasses (see exceptions.py).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass
class ClassificationResult:
    """Normalized outcome of one successful classify call."""

    classification: str
    model: str
    prompt: str
    processing_time_ms: int


class InferenceBackend(ABC):
    """Abstract interface for a vision-language inference service."""

    model: str

    @abstractmethod
    async def is_reachable(self) -> bool:
        """
        Lightweight connectivity probe with a short timeout.

        Returns False on network failure, non-success status or timeout.
        """
        ...

    @abstractmethod
    async def is_model_ready(self, name: Optional[str] = None) -> bool:
        """
        Whether model `name` (default: the configured model) is installed on
        the backend.

        Returns False when the probe itself fails.
        """
        ...

    async def availability(self) -> Tuple[bool, bool]:
        """(reachable, model_ready) for the configured model."""
        reachable = await self.is_reachable()
        return reachable, reachable and await self.is_model_ready()

    @abstractmethod
    async def classify_image(self, image_base64: str, prompt: str) -> ClassificationResult:
        """
        Classify one base64-encoded image.

        Raises:
            ServiceUnavailableError: backend unreachable
            ResourceNotReadyError:   model not installed
            TransportError:          network failure during the call
            MalformedResponseError:  backend answered with an invalid payload
        """
        ...

    async def aclose(self) -> None:
        """Release pooled connections. Default: nothing to release."""
        return None
