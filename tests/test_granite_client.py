"""
Tests for the Granite client: token exchange, retry, timeout and parsing.
Uses httpx.MockTransport so no network is touched.
"""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from clauseguard.core.errors import (
    AuthenticationError,
    ExternalTimeoutError,
    ModelResponseError,
    ModelServiceError,
)
from clauseguard.services.granite_client import GraniteClient

IAM_HOST = "iam.cloud.ibm.com"

GOOD_BODY = {
    "results": [{"generated_text": "Short summary."}],
    "input_token_count": 40,
    "generated_token_count": 12,
}


class FakeWatsonx:
    """Routes IAM and generation requests; records what it saw."""

    def __init__(self, generation=None, iam_status: int = 200, expires_in: int = 3600):
        self.generation = generation or (lambda request, n: httpx.Response(200, json=GOOD_BODY))
        self.iam_status = iam_status
        self.expires_in = expires_in
        self.iam_requests = []
        self.generation_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == IAM_HOST:
            self.iam_requests.append(request)
            if self.iam_status != 200:
                return httpx.Response(self.iam_status, json={"errorMessage": "bad key"})
            token = f"tok-{len(self.iam_requests)}"
            return httpx.Response(200, json={"access_token": token, "expires_in": self.expires_in})
        self.generation_requests.append(request)
        return self.generation(request, len(self.generation_requests))


def make_client(settings, fake) -> GraniteClient:
    return GraniteClient(settings, transport=httpx.MockTransport(fake))


async def generate(client, **kwargs):
    return await client.generate("Summarize.", max_new_tokens=500, temperature=0.3, top_p=0.9, **kwargs)


# =============================================================================
# Happy path
# =============================================================================

@pytest.mark.anyio
async def test_generate_parses_text_and_counts(settings):
    fake = FakeWatsonx()
    result = await generate(make_client(settings, fake))

    assert result.text == "Short summary."
    assert result.input_token_count == 40
    assert result.generated_token_count == 12
    assert result.total_tokens == 52


@pytest.mark.anyio
async def test_request_shape(settings):
    settings.granite_project_id = "proj-1"
    fake = FakeWatsonx()
    await generate(make_client(settings, fake))

    iam_form = parse_qs(fake.iam_requests[0].content.decode())
    assert iam_form["grant_type"] == ["urn:ibm:params:oauth:grant-type:apikey"]
    assert iam_form["apikey"] == ["test-key"]

    request = fake.generation_requests[0]
    assert request.headers["Authorization"] == "Bearer tok-1"
    assert request.url.params["version"] == settings.granite_api_version
    body = json.loads(request.content)
    assert body["model_id"] == settings.granite_model_id
    assert body["project_id"] == "proj-1"
    assert body["parameters"] == {"max_new_tokens": 500, "temperature": 0.3, "top_p": 0.9}


@pytest.mark.anyio
async def test_token_counts_inside_results(settings):
    body = {"results": [{"generated_text": "ok", "input_token_count": 7, "generated_token_count": 3}]}
    fake = FakeWatsonx(generation=lambda request, n: httpx.Response(200, json=body))
    result = await generate(make_client(settings, fake))

    assert (result.input_token_count, result.generated_token_count) == (7, 3)


# =============================================================================
# Bearer token
# =============================================================================

@pytest.mark.anyio
async def test_token_is_cached_between_calls(settings):
    fake = FakeWatsonx()
    client = make_client(settings, fake)
    await generate(client)
    await generate(client)

    assert len(fake.iam_requests) == 1


@pytest.mark.anyio
async def test_token_inside_refresh_margin_is_renewed(settings):
    fake = FakeWatsonx(expires_in=30)
    client = make_client(settings, fake)
    await generate(client)
    await generate(client)

    assert len(fake.iam_requests) == 2


@pytest.mark.anyio
async def test_concurrent_calls_exchange_once(settings):
    fake = FakeWatsonx()
    client = make_client(settings, fake)
    results = await asyncio.gather(*(generate(client) for _ in range(5)))

    assert len(results) == 5
    assert len(fake.iam_requests) == 1


@pytest.mark.anyio
async def test_401_refreshes_and_retries_once(settings):
    def generation(request, n):
        if request.headers["Authorization"] == "Bearer tok-1":
            return httpx.Response(401)
        return httpx.Response(200, json=GOOD_BODY)

    fake = FakeWatsonx(generation=generation)
    result = await generate(make_client(settings, fake))

    assert result.text == "Short summary."
    assert len(fake.iam_requests) == 2
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
async def test_second_401_is_authentication_error(settings):
    fake = FakeWatsonx(generation=lambda request, n: httpx.Response(401))

    with pytest.raises(AuthenticationError):
        await generate(make_client(settings, fake))
    assert len(fake.iam_requests) == 2
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
async def test_rejected_credentials(settings):
    fake = FakeWatsonx(iam_status=400)

    with pytest.raises(AuthenticationError):
        await generate(make_client(settings, fake))
    assert fake.generation_requests == []


# =============================================================================
# Failures
# =============================================================================

@pytest.mark.anyio
async def test_server_error_is_retried_once(settings):
    def generation(request, n):
        return httpx.Response(503) if n == 1 else httpx.Response(200, json=GOOD_BODY)

    fake = FakeWatsonx(generation=generation)
    result = await generate(make_client(settings, fake))

    assert result.text == "Short summary."
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
async def test_persistent_server_error(settings):
    fake = FakeWatsonx(generation=lambda request, n: httpx.Response(500))

    with pytest.raises(ModelServiceError) as exc_info:
        await generate(make_client(settings, fake))
    assert exc_info.value.upstream_status == 500
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
async def test_transport_error(settings):
    def generation(request, n):
        raise httpx.ConnectError("connection refused", request=request)

    fake = FakeWatsonx(generation=generation)
    with pytest.raises(ModelServiceError) as exc_info:
        await generate(make_client(settings, fake))
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert exc_info.value.upstream_status is None
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
async def test_transport_error_then_success(settings):
    def generation(request, n):
        if n == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json=GOOD_BODY)

    fake = FakeWatsonx(generation=generation)
    result = await generate(make_client(settings, fake))

    assert result.text == "Short summary."
    assert len(fake.generation_requests) == 2


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json={"results": []}),
        httpx.Response(200, json={"results": [{"generated_text": 5}]}),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
async def test_malformed_body(settings, response):
    fake = FakeWatsonx(generation=lambda request, n: response)

    with pytest.raises(ModelResponseError):
        await generate(make_client(settings, fake))


@pytest.mark.anyio
async def test_timeout_cancels_request(settings):
    finished = []

    async def slow_handler(request):
        if request.url.host == IAM_HOST:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        await asyncio.sleep(5)
        finished.append(True)
        return httpx.Response(200, json=GOOD_BODY)

    client = GraniteClient(settings, transport=httpx.MockTransport(slow_handler))
    with pytest.raises(ExternalTimeoutError) as exc_info:
        await generate(client, timeout=0.05)

    await asyncio.sleep(0.1)
    assert finished == []
    assert exc_info.value.timeout == 0.05


@pytest.mark.anyio
async def test_unconfigured_client_fails_fast(settings):
    settings.granite_api_key = ""
    fake = FakeWatsonx()
    client = make_client(settings, fake)

    assert not client.is_configured
    with pytest.raises(ModelServiceError):
        await generate(client)
    assert fake.iam_requests == []
