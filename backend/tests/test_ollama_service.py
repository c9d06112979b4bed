"""
Classify API Backend — Ollama Service Tests (Mocked Transport)
==============================================================

What:  Tests for OllamaService against httpx.MockTransport.
How:   A stub routes /api/tags and /api/generate to per-test handlers, so
       no Ollama server or network is needed.

What we test:
    ✅ Probes answer False (never raise) on refused connections and timeouts
    ✅ Model presence uses substring match ("moondream" ~ "moondream:latest")
    ✅ One /api/tags request answers both reachability and model readiness
    ✅ Generate payload carries the fixed decoding options
    ✅ total_duration (ns) becomes processing_time_ms
    ✅ Missing / null `response` → MalformedResponseError
    ✅ Transport failures → TransportError with the right kind
"""

import errno
import json
import socket

import httpx
import pytest
import pytest_asyncio

from classify_api.exceptions import (
    MalformedResponseError,
    ResourceNotReadyError,
    ServiceUnavailableError,
    TransportError,
    UpstreamHTTPError,
)
from classify_api.services.gateway import InferenceGateway
from classify_api.services.ollama_service import (
    GENERATION_OPTIONS,
    OllamaService,
    classify_transport_error,
)

BASE_URL = "http://ollama.test:11434"


class OllamaStub:
    """Routes requests to replaceable handlers and records them."""

    def __init__(self):
        self.requests = []
        self.tags = lambda request: httpx.Response(
            200, json={"models": [{"name": "moondream:latest"}, {"name": "llava:7b"}]}
        )
        self.generate = lambda request: httpx.Response(
            200,
            json={"response": "  A red apple  ", "done": True, "total_duration": 2_500_000_000},
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/tags":
            return self.tags(request)
        if request.url.path == "/api/generate":
            return self.generate(request)
        return httpx.Response(404)

    @property
    def generate_calls(self):
        return [r for r in self.requests if r.url.path == "/api/generate"]


def raising(exc_factory):
    def handler(request):
        raise exc_factory(request)
    return handler


@pytest.fixture
def stub():
    return OllamaStub()


@pytest_asyncio.fixture
async def service(stub):
    svc = OllamaService(
        base_url=BASE_URL,
        model="moondream",
        probe_timeout=5,
        request_timeout=60,
        transport=httpx.MockTransport(stub),
    )
    yield svc
    await svc.aclose()


class TestProbes:
    @pytest.mark.asyncio
    async def test_reachable_and_model_ready(self, service):
        assert await service.is_reachable() is True
        assert await service.is_model_ready() is True

    @pytest.mark.asyncio
    async def test_model_missing(self, service, stub):
        stub.tags = lambda request: httpx.Response(200, json={"models": [{"name": "llava:7b"}]})

        assert await service.is_reachable() is True
        assert await service.is_model_ready() is False

    @pytest.mark.asyncio
    async def test_connection_refused_is_not_reachable(self, service, stub):
        stub.tags = raising(lambda request: httpx.ConnectError("Connection refused", request=request))

        assert await service.is_reachable() is False
        assert await service.is_model_ready() is False

    @pytest.mark.asyncio
    async def test_probe_timeout_is_not_reachable(self, service, stub):
        stub.tags = raising(lambda request: httpx.ReadTimeout("timed out", request=request))

        assert await service.is_reachable() is False

    @pytest.mark.asyncio
    async def test_error_status_is_not_reachable(self, service, stub):
        stub.tags = lambda request: httpx.Response(500, text="boom")

        assert await service.is_reachable() is False

    @pytest.mark.asyncio
    async def test_garbage_tags_body_means_no_models(self, service, stub):
        stub.tags = lambda request: httpx.Response(200, text="not json")

        assert await service.is_reachable() is True
        assert await service.is_model_ready() is False

    @pytest.mark.asyncio
    async def test_named_model_readiness(self, service):
        assert await service.is_model_ready("llava") is True
        assert await service.is_model_ready("qwen2-vl") is False

    @pytest.mark.asyncio
    async def test_availability_uses_one_tags_request(self, service, stub):
        assert await service.availability() == (True, True)
        assert len(stub.requests) == 1

    @pytest.mark.asyncio
    async def test_status_fetches_tags_once(self, service, stub):
        gateway = InferenceGateway(service)

        status = await gateway.get_status()

        assert status.healthy is True
        assert [r.url.path for r in stub.requests] == ["/api/tags"]

    @pytest.mark.asyncio
    async def test_unreachable_availability(self, service, stub):
        stub.tags = raising(lambda request: httpx.ConnectError("Connection refused", request=request))

        assert await service.availability() == (False, False)


class TestClassifyImage:
    @pytest.mark.asyncio
    async def test_success(self, service, stub):
        result = await service.classify_image("aGVsbG8=", "What is this?")

        assert result.classification == "A red apple"
        assert result.model == "moondream"
        assert result.prompt == "What is this?"
        assert result.processing_time_ms == 2500

    @pytest.mark.asyncio
    async def test_payload(self, service, stub):
        await service.classify_image("aGVsbG8=", "What is this?")

        body = json.loads(stub.generate_calls[0].content)
        assert body == {
            "model": "moondream",
            "prompt": "What is this?",
            "images": ["aGVsbG8="],
            "stream": False,
            "options": {"temperature": 0.1, "top_p": 0.9, "top_k": 40},
        }
        assert body["options"] == GENERATION_OPTIONS

    @pytest.mark.asyncio
    async def test_local_duration_when_model_reports_none(self, service, stub):
        stub.generate = lambda request: httpx.Response(200, json={"response": "A cat"})

        result = await service.classify_image("aGVsbG8=", "prompt")
        assert result.classification == "A cat"
        assert isinstance(result.processing_time_ms, int)
        assert result.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_unreachable_backend_skips_generate(self, service, stub):
        stub.tags = raising(lambda request: httpx.ConnectError("Connection refused", request=request))

        with pytest.raises(ServiceUnavailableError):
            await service.classify_image("aGVsbG8=", "prompt")
        assert stub.generate_calls == []

    @pytest.mark.asyncio
    async def test_missing_model_skips_generate(self, service, stub):
        stub.tags = lambda request: httpx.Response(200, json={"models": []})

        with pytest.raises(ResourceNotReadyError) as exc_info:
            await service.classify_image("aGVsbG8=", "prompt")
        assert "ollama pull moondream" in exc_info.value.message
        assert stub.generate_calls == []

    @pytest.mark.asyncio
    async def test_missing_response_field_is_malformed(self, service, stub):
        stub.generate = lambda request: httpx.Response(200, json={"done": True})

        with pytest.raises(MalformedResponseError):
            await service.classify_image("aGVsbG8=", "prompt")

    @pytest.mark.asyncio
    async def test_null_response_field_is_malformed(self, service, stub):
        stub.generate = lambda request: httpx.Response(200, json={"response": None})

        with pytest.raises(MalformedResponseError):
            await service.classify_image("aGVsbG8=", "prompt")

    @pytest.mark.asyncio
    async def test_empty_body_is_malformed(self, service, stub):
        stub.generate = lambda request: httpx.Response(200, content=b"")

        with pytest.raises(MalformedResponseError):
            await service.classify_image("aGVsbG8=", "prompt")

    @pytest.mark.asyncio
    async def test_non_200_success_status_is_malformed(self, service, stub):
        stub.generate = lambda request: httpx.Response(202, json={"response": "A cat"})

        with pytest.raises(MalformedResponseError):
            await service.classify_image("aGVsbG8=", "prompt")

    @pytest.mark.asyncio
    async def test_upstream_error_status(self, service, stub):
        stub.generate = lambda request: httpx.Response(500, text="model crashed")

        with pytest.raises(UpstreamHTTPError) as exc_info:
            await service.classify_image("aGVsbG8=", "prompt")
        assert exc_info.value.upstream_status == 500
        assert exc_info.value.status_code == 502
        assert "model crashed" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_refused_during_generate(self, service, stub):
        def refuse(request):
            raise httpx.ConnectError("connect failed", request=request) from ConnectionRefusedError(
                errno.ECONNREFUSED, "Connection refused"
            )

        stub.generate = refuse

        with pytest.raises(TransportError) as exc_info:
            await service.classify_image("aGVsbG8=", "prompt")
        assert exc_info.value.kind == TransportError.CONNECTION_REFUSED
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_during_generate(self, service, stub):
        stub.generate = raising(lambda request: httpx.ReadTimeout("timed out", request=request))

        with pytest.raises(TransportError) as exc_info:
            await service.classify_image("aGVsbG8=", "prompt")
        assert exc_info.value.kind == TransportError.TIMEOUT
        assert exc_info.value.status_code == 504


class TestTransportErrorKinds:
    def _wrapped(self, cause: BaseException) -> httpx.ConnectError:
        exc = httpx.ConnectError("connect failed")
        exc.__cause__ = cause
        return exc

    def test_timeout(self):
        assert classify_transport_error(httpx.ConnectTimeout("slow")) == TransportError.TIMEOUT

    def test_dns_failure(self):
        exc = self._wrapped(socket.gaierror(socket.EAI_NONAME, "Name or service not known"))
        assert classify_transport_error(exc) == TransportError.DNS_NOT_FOUND

    def test_network_unreachable(self):
        exc = self._wrapped(OSError(errno.ENETUNREACH, "Network is unreachable"))
        assert classify_transport_error(exc) == TransportError.NETWORK_UNREACHABLE

    def test_refused_from_message(self):
        exc = httpx.ConnectError("[Errno 111] Connection refused")
        assert classify_transport_error(exc) == TransportError.CONNECTION_REFUSED

    def test_generic(self):
        exc = httpx.RemoteProtocolError("Server disconnected without sending a response.")
        assert classify_transport_error(exc) == TransportError.GENERIC

    def test_messages_differ_per_kind(self):
        messages = {TransportError(kind=kind).message for kind in TransportError.TRANSPORT_MESSAGES}
        assert len(messages) == len(TransportError.TRANSPORT_MESSAGES)
