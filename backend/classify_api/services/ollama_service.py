"""
Classify API Backend — Ollama Vision Service Implementation
===========================================================

What:  Concrete inference backend that classifies images with an Ollama
       vision-language model (moondream by default).
How:   Probes GET /api/tags for availability, then sends the image and prompt
       to POST /api/generate through a pooled httpx.AsyncClient. Transport
       failures and bad payloads are translated into the stable InferenceError
       taxonomy before they leave this module.
Who:   Built once in the application lifespan and wrapped by the
       InferenceGateway. ClassificationService submits classify_image() calls.

Timeouts:
    The probe and the generate call use separate per-request timeouts
    (settings.ollama_probe_timeout, settings.ollama_request_timeout), so a slow
    probe never eats into the generate budget. Queue waiting is bounded by the
    gateway, not here.

Error translation:
    httpx.TimeoutException           → TransportError(kind="timeout")
    httpx.ConnectError (ECONNREFUSED) → TransportError(kind="connection_refused")
    httpx.ConnectError (DNS failure)  → TransportError(kind="dns_not_found")
    httpx.ConnectError (ENETUNREACH)  → TransportError(kind="network_unreachable")
    other httpx.RequestError          → TransportError(kind="generic")
    HTTP status >= 400                → UpstreamHTTPError
    bad / empty / incomplete payload  → MalformedResponseError

    Raw exception text is logged, never put in the user-facing message.
"""

import errno
import logging
import socket
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

import httpx

from classify_api.config import settings
from classify_api.exceptions import (
    MalformedResponseError,
    ResourceNotReadyError,
    ServiceUnavailableError,
    TransportError,
    UpstreamHTTPError,
)
from classify_api.services.inference_base import ClassificationResult, InferenceBackend

logger = logging.getLogger(__name__)

TAGS_PATH = "/api/tags"
GENERATE_PATH = "/api/generate"

# Fixed decoding parameters; low randomness keeps labels stable across calls
GENERATION_OPTIONS = {
    "temperature": 0.1,
    "top_p": 0.9,
    "top_k": 40,
}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated with hostname",
    "getaddrinfo failed",
)


def classify_transport_error(exc: BaseException) -> str:
    """
    Map an httpx transport exception to a TransportError kind.

    Walks the __cause__ / __context__ chain because httpx wraps the
    underlying OSError raised by the socket layer.
    """
    if isinstance(exc, httpx.TimeoutException):
        return TransportError.TIMEOUT

    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, socket.gaierror):
            return TransportError.DNS_NOT_FOUND
        if isinstance(current, ConnectionRefusedError):
            return TransportError.CONNECTION_REFUSED
        if isinstance(current, TimeoutError):
            return TransportError.TIMEOUT
        if isinstance(current, OSError) and current.errno is not None:
            if current.errno == errno.ECONNREFUSED:
                return TransportError.CONNECTION_REFUSED
            if current.errno == errno.ENETUNREACH:
                return TransportError.NETWORK_UNREACHABLE
        current = current.__cause__ or current.__context__

    text = str(exc).lower()
    if any(marker in text for marker in _DNS_MARKERS):
        return TransportError.DNS_NOT_FOUND
    if "connection refused" in text:
        return TransportError.CONNECTION_REFUSED
    if "network is unreachable" in text:
        return TransportError.NETWORK_UNREACHABLE
    return TransportError.GENERIC


class OllamaService(InferenceBackend):
    """
    Ollama implementation of the inference backend.

    Args:
        base_url:         Ollama server URL (default: settings.ollama_api_url)
        model:            Model name to require and call (default: settings.ollama_model)
        probe_timeout:    Seconds allowed for GET /api/tags
        request_timeout:  Seconds allowed for POST /api/generate
        max_connections:  Connection pool size; matches the gateway's slot count
        transport:        Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        probe_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        max_connections: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.ollama_api_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.probe_timeout = probe_timeout or settings.ollama_probe_timeout
        self.request_timeout = request_timeout or settings.ollama_request_timeout

        pool_size = max_connections or settings.ollama_max_concurrent
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.request_timeout,
            follow_redirects=False,
            limits=httpx.Limits(
                max_connections=pool_size + 2,  # headroom for status probes
                max_keepalive_connections=pool_size,
                keepalive_expiry=30.0,
            ),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

        logger.info(
            "OllamaService initialized with url=%s, model=%s, timeouts(probe=%.0fs, request=%.0fs)",
            self.base_url,
            self.model,
            self.probe_timeout,
            self.request_timeout,
        )

    # ── Availability Probes ───────────────────────────────────────────────

    async def _probe(self) -> Tuple[bool, List[Dict[str, Any]]]:
        """
        One GET /api/tags round-trip.

        Returns (reachable, models). Never raises.
        """
        try:
            response = await self.client.get(
                TAGS_PATH,
                timeout=httpx.Timeout(self.probe_timeout),
            )
        except httpx.HTTPError as e:
            logger.warning("Ollama probe failed (%s): %s", type(e).__name__, str(e))
            return False, []

        if response.status_code != 200:
            logger.warning("Ollama probe returned status %d", response.status_code)
            return False, []

        try:
            body = response.json()
        except ValueError:
            logger.warning("Ollama probe returned a non-JSON body")
            return True, []

        models = body.get("models") if isinstance(body, dict) else None
        return True, models if isinstance(models, list) else []

    def _model_in(self, models: List[Dict[str, Any]], name: Optional[str] = None) -> bool:
        wanted = name or self.model
        for entry in models:
            installed = entry.get("name") if isinstance(entry, dict) else None
            if isinstance(installed, str) and wanted in installed:
                return True
        return False

    async def is_reachable(self) -> bool:
        reachable, _ = await self._probe()
        logger.debug("Ollama reachable at %s: %s", self.base_url, reachable)
        return reachable

    async def is_model_ready(self, name: Optional[str] = None) -> bool:
        reachable, models = await self._probe()
        if not reachable:
            return False
        ready = self._model_in(models, name)
        logger.debug("Model '%s' %s", name or self.model, "found" if ready else "not found")
        return ready

    async def availability(self) -> Tuple[bool, bool]:
        reachable, models = await self._probe()
        return reachable, reachable and self._model_in(models)

    # ── Inference ─────────────────────────────────────────────────────────

    def build_payload(self, image_base64: str, prompt: str) -> Dict[str, Any]:
        """Request body for POST /api/generate."""
        return {
            "model": self.model,
            "prompt": prompt,
            "images": [image_base64],
            "stream": False,
            "options": dict(GENERATION_OPTIONS),
        }

    async def classify_image(self, image_base64: str, prompt: str) -> ClassificationResult:
        """
        Classify an image with the configured vision model.

        Flow:
            1. Probe /api/tags (reachable? model installed?)
            2. POST /api/generate with the fixed decoding options
            3. Validate the payload and normalize the result

        Raises:
            ServiceUnavailableError, ResourceNotReadyError, TransportError,
            UpstreamHTTPError, MalformedResponseError
        """
        request_id = uuid.uuid4().hex[:8]

        # Pre-flight checks run when the unit of work starts, not when it was
        # queued, so a backend that went away in the meantime is detected.
        reachable, models = await self._probe()
        if not reachable:
            raise ServiceUnavailableError(context={"request_id": request_id})
        if not self._model_in(models):
            raise ResourceNotReadyError(self.model, context={"request_id": request_id})

        logger.info(
            "[%s] Classifying image with model=%s (%d KB base64)",
            request_id,
            self.model,
            round(len(image_base64) / 1024),
        )

        start_time = time.perf_counter()
        try:
            response = await self.client.post(
                GENERATE_PATH,
                json=self.build_payload(image_base64, prompt),
                timeout=httpx.Timeout(self.request_timeout),
            )
        except httpx.HTTPError as e:
            kind = classify_transport_error(e)
            logger.error(
                "[%s] Ollama generate call failed (%s/%s): %s",
                request_id,
                kind,
                type(e).__name__,
                str(e),
            )
            raise TransportError(kind=kind, context={"request_id": request_id})

        local_ms = round((time.perf_counter() - start_time) * 1000)
        logger.info("[%s] Ollama answered %d in %dms", request_id, response.status_code, local_ms)

        return self._parse_response(response, prompt, local_ms, request_id)

    def _parse_response(
        self,
        response: httpx.Response,
        prompt: str,
        local_ms: int,
        request_id: str,
    ) -> ClassificationResult:
        if response.status_code >= 400:
            logger.error(
                "[%s] Ollama returned error status %d: %s",
                request_id,
                response.status_code,
                response.text[:500],
            )
            raise UpstreamHTTPError(response.status_code, context={"request_id": request_id})

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "[%s] Ollama response status=%d keys=%s",
                request_id,
                response.status_code,
                sorted(body.keys()) if isinstance(body, dict) else type(body).__name__,
            )

        if not body:
            raise MalformedResponseError(
                message="Empty response from Ollama API",
                context={"request_id": request_id},
            )
        if response.status_code != 200:
            raise MalformedResponseError(
                message=f"Ollama API returned unexpected status {response.status_code}",
                context={"request_id": request_id},
            )
        if not isinstance(body, dict) or "response" not in body:
            raise MalformedResponseError(
                message='Ollama API response is missing the "response" field',
                context={"request_id": request_id},
            )
        if body["response"] is None:
            raise MalformedResponseError(
                message="Ollama API response field is null",
                context={"request_id": request_id},
            )

        total_duration = body.get("total_duration")
        if isinstance(total_duration, (int, float)) and total_duration > 0:
            processing_ms = round(total_duration / 1_000_000)  # nanoseconds → ms
        else:
            processing_ms = local_ms

        result = ClassificationResult(
            classification=str(body["response"]).strip(),
            model=self.model,
            prompt=prompt,
            processing_time_ms=processing_ms,
        )
        logger.info(
            "[%s] Classification completed: %s",
            request_id,
            result.classification[:100],
        )
        return result

    async def aclose(self) -> None:
        await self.client.aclose()


