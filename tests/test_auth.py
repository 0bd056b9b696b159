"""Tests for the token providers."""

import base64

import httpx
import pytest

from watson_stt.client.auth import (
  BasicAuthTokenProvider,
  IAMTokenProvider,
  StaticTokenProvider,
  TokenScheme,
  apply_token,
)
from watson_stt.errors import AuthenticationError

TOKEN_URL = "https://stream.example.test/authorization/api/v1/token"
SERVICE_URL = "https://stream.example.test/speech-to-text/api"
IAM_URL = "https://iam.example.test/identity/token"


def mock_client(handler) -> httpx.AsyncClient:
  return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestStaticTokenProvider:
  @pytest.mark.asyncio
  async def test_returns_same_token(self):
    provider = StaticTokenProvider("abc")

    assert await provider.get_token() == "abc"
    assert await provider.refresh() == "abc"
    assert provider.scheme is TokenScheme.WATSON_HEADER

  def test_empty_token_rejected(self):
    with pytest.raises(AuthenticationError):
      StaticTokenProvider("")


class TestBasicAuthTokenProvider:
  """Token exchange against the legacy authorization endpoint."""

  @pytest.mark.asyncio
  async def test_fetches_and_caches_token(self):
    """Test that the token is requested once with basic auth and the service URL."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
      requests.append(request)
      return httpx.Response(200, text=f"token-{len(requests)}\n")

    provider = BasicAuthTokenProvider(
      "user", "pass", TOKEN_URL, SERVICE_URL, client=mock_client(handler)
    )

    assert await provider.get_token() == "token-1"
    assert await provider.get_token() == "token-1"
    assert len(requests) == 1

    request = requests[0]
    assert request.method == "GET"
    assert request.url.params["url"] == SERVICE_URL
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"user:pass").decode()

  @pytest.mark.asyncio
  async def test_refresh_fetches_new_token(self):
    """Test that refresh discards the cached token."""
    count = 0

    def handler(request: httpx.Request) -> httpx.Response:
      nonlocal count
      count += 1
      return httpx.Response(200, text=f"token-{count}")

    provider = BasicAuthTokenProvider(
      "user", "pass", TOKEN_URL, SERVICE_URL, client=mock_client(handler)
    )

    assert await provider.get_token() == "token-1"
    assert await provider.refresh() == "token-2"
    assert await provider.get_token() == "token-2"

  @pytest.mark.asyncio
  async def test_rejected_credentials(self):
    """Test that an error status becomes an AuthenticationError carrying the status."""

    def handler(request: httpx.Request) -> httpx.Response:
      return httpx.Response(401, json={"code": 401, "error": "Not Authorized"})

    provider = BasicAuthTokenProvider(
      "user", "wrong", TOKEN_URL, SERVICE_URL, client=mock_client(handler)
    )

    with pytest.raises(AuthenticationError, match="Not Authorized") as exc_info:
      await provider.get_token()
    assert exc_info.value.code == 401

  @pytest.mark.asyncio
  async def test_network_failure(self):
    """Test that an unreachable token service becomes an AuthenticationError."""

    def handler(request: httpx.Request) -> httpx.Response:
      raise httpx.ConnectError("connection refused", request=request)

    provider = BasicAuthTokenProvider(
      "user", "pass", TOKEN_URL, SERVICE_URL, client=mock_client(handler)
    )

    with pytest.raises(AuthenticationError, match="Failed to reach the token service"):
      await provider.get_token()

  @pytest.mark.asyncio
  async def test_empty_token_body(self):
    def handler(request: httpx.Request) -> httpx.Response:
      return httpx.Response(200, text="  ")

    provider = BasicAuthTokenProvider(
      "user", "pass", TOKEN_URL, SERVICE_URL, client=mock_client(handler)
    )

    with pytest.raises(AuthenticationError, match="empty token"):
      await provider.get_token()


class TestIAMTokenProvider:
  """API key exchange against IAM."""

  @pytest.mark.asyncio
  async def test_exchanges_api_key(self):
    """Test that the API key is posted as a form and the access token returned."""
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
      requests.append(request)
      return httpx.Response(200, json={"access_token": "iam-token", "expires_in": 3600})

    provider = IAMTokenProvider("my-key", url=IAM_URL, client=mock_client(handler))

    assert await provider.get_token() == "iam-token"
    assert await provider.get_token() == "iam-token"
    assert len(requests) == 1
    assert provider.scheme is TokenScheme.ACCESS_TOKEN_QUERY

    form = dict(httpx.QueryParams(requests[0].content.decode()))
    assert form == {"grant_type": "urn:ibm:params:oauth:grant-type:apikey", "apikey": "my-key"}

  @pytest.mark.asyncio
  async def test_expired_token_is_refetched(self):
    """Test that a token inside the refresh margin is not reused."""
    count = 0

    def handler(request: httpx.Request) -> httpx.Response:
      nonlocal count
      count += 1
      return httpx.Response(200, json={"access_token": f"iam-{count}", "expires_in": 30})

    provider = IAMTokenProvider(
      "my-key", url=IAM_URL, client=mock_client(handler), refresh_margin=60
    )

    assert await provider.get_token() == "iam-1"
    assert await provider.get_token() == "iam-2"

  @pytest.mark.asyncio
  async def test_missing_access_token(self):
    def handler(request: httpx.Request) -> httpx.Response:
      return httpx.Response(200, json={"token_type": "Bearer"})

    provider = IAMTokenProvider("my-key", url=IAM_URL, client=mock_client(handler))

    with pytest.raises(AuthenticationError, match="did not contain an access token"):
      await provider.get_token()

  @pytest.mark.asyncio
  async def test_invalid_api_key(self):
    def handler(request: httpx.Request) -> httpx.Response:
      return httpx.Response(400, json={"errorMessage": "Provided API key could not be found."})

    provider = IAMTokenProvider("bad", url=IAM_URL, client=mock_client(handler))

    with pytest.raises(AuthenticationError, match="API key could not be found") as exc_info:
      await provider.get_token()
    assert exc_info.value.code == 400


class TestApplyToken:
  def test_header_scheme(self):
    url = httpx.URL("wss://host/recognize?model=m")

    new_url, headers = apply_token(url, {"A": "1"}, "tok", TokenScheme.WATSON_HEADER)

    assert new_url == url
    assert headers == {"A": "1", "X-Watson-Authorization-Token": "tok"}

  def test_query_scheme(self):
    url = httpx.URL("wss://host/recognize?model=m")

    new_url, headers = apply_token(url, {"A": "1"}, "tok", TokenScheme.ACCESS_TOKEN_QUERY)

    assert new_url.params["access_token"] == "tok"
    assert new_url.params["model"] == "m"
    assert headers == {"A": "1"}
