"""
Authentication token providers.

A session never mutates a token. It asks its provider for one before connecting and for a
fresh one after the service rejects the connection.
"""

import asyncio
import time
from enum import StrEnum
from typing import Protocol

import httpx

from watson_stt.common import get_logger
from watson_stt.errors import AuthenticationError
from watson_stt.wire import WebSocketHeaders

DEFAULT_IAM_URL = "https://iam.cloud.ibm.com/identity/token"
IAM_GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"

logger = get_logger("auth")


class TokenScheme(StrEnum):
  """How a token is presented on the WebSocket upgrade request."""

  WATSON_HEADER = "watson-header"
  """``X-Watson-Authorization-Token`` request header."""

  ACCESS_TOKEN_QUERY = "access-token-query"
  """``access_token`` query parameter carrying a bearer token."""


class TokenProvider(Protocol):
  """Supplies and refreshes an opaque bearer token."""

  scheme: TokenScheme

  async def get_token(self) -> str:
    """
    Return a usable token, fetching one if none is cached.

    :raises AuthenticationError: If no token can be obtained.
    """
    ...

  async def refresh(self) -> str:
    """
    Discard any cached token and fetch a new one.

    :raises AuthenticationError: If no token can be obtained.
    """
    ...


class StaticTokenProvider:
  """Serves a token issued elsewhere. Refreshing returns the same token."""

  def __init__(self, token: str, scheme: TokenScheme = TokenScheme.WATSON_HEADER) -> None:
    if not token:
      raise AuthenticationError("A static token provider needs a non-empty token")
    self._token = token
    self.scheme = scheme

  async def get_token(self) -> str:
    return self._token

  async def refresh(self) -> str:
    return self._token


class _HTTPTokenProvider:
  """Shared caching and single-flight refresh for providers backed by an HTTP token service."""

  scheme: TokenScheme

  def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
    self._client = client
    self._timeout = timeout
    self._token: str | None = None
    self._expires_at: float | None = None
    self._lock = asyncio.Lock()

  def _is_fresh(self) -> bool:
    if self._token is None:
      return False
    return self._expires_at is None or time.monotonic() < self._expires_at

  async def get_token(self) -> str:
    async with self._lock:
      if not self._is_fresh():
        await self._fetch()
      assert self._token is not None
      return self._token

  async def refresh(self) -> str:
    async with self._lock:
      self._token = None
      await self._fetch()
      assert self._token is not None
      return self._token

  async def _fetch(self) -> None:
    try:
      if self._client is not None:
        response = await self._request(self._client)
      else:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
          response = await self._request(client)
    except httpx.HTTPError as e:
      raise AuthenticationError(f"Failed to reach the token service: {e}") from e

    if response.is_error:
      raise AuthenticationError(
        f"Token request failed: {_describe_error(response)}", code=response.status_code
      )

    self._token, lifetime = self._parse(response)
    self._expires_at = None if lifetime is None else time.monotonic() + lifetime
    logger.debug("Obtained token", provider=type(self).__name__, lifetime=lifetime)

  async def _request(self, client: httpx.AsyncClient) -> httpx.Response:
    raise NotImplementedError

  def _parse(self, response: httpx.Response) -> tuple[str, float | None]:
    raise NotImplementedError


def _describe_error(response: httpx.Response) -> str:
  try:
    body = response.json()
  except ValueError:
    return response.text or response.reason_phrase
  if isinstance(body, dict):
    for key in ("errorMessage", "description", "error"):
      if isinstance(body.get(key), str):
        return body[key]
  return response.reason_phrase


class BasicAuthTokenProvider(_HTTPTokenProvider):
  """Exchanges service credentials for a token at the Watson authorization endpoint."""

  scheme = TokenScheme.WATSON_HEADER

  def __init__(
    self,
    username: str,
    password: str,
    token_url: str,
    service_url: str,
    client: httpx.AsyncClient | None = None,
  ) -> None:
    super().__init__(client)
    self._auth = httpx.BasicAuth(username, password)
    self._token_url = token_url
    self._service_url = service_url

  async def _request(self, client: httpx.AsyncClient) -> httpx.Response:
    return await client.get(self._token_url, params={"url": self._service_url}, auth=self._auth)

  def _parse(self, response: httpx.Response) -> tuple[str, float | None]:
    token = response.text.strip()
    if not token:
      raise AuthenticationError("Token service returned an empty token")
    return token, None


class IAMTokenProvider(_HTTPTokenProvider):
  """
  Exchanges an API key for an IAM access token.

  Tokens are cached until ``refresh_margin`` seconds before the expiry the service reports.
  """

  scheme = TokenScheme.ACCESS_TOKEN_QUERY

  def __init__(
    self,
    apikey: str,
    url: str = DEFAULT_IAM_URL,
    client: httpx.AsyncClient | None = None,
    refresh_margin: float = 60.0,
  ) -> None:
    super().__init__(client)
    self._apikey = apikey
    self._url = url
    self._refresh_margin = refresh_margin

  async def _request(self, client: httpx.AsyncClient) -> httpx.Response:
    return await client.post(
      self._url,
      data={"grant_type": IAM_GRANT_TYPE, "apikey": self._apikey},
      headers={"Accept": "application/json"},
    )

  def _parse(self, response: httpx.Response) -> tuple[str, float | None]:
    try:
      body = response.json()
      token = body["access_token"]
    except (ValueError, KeyError, TypeError) as e:
      raise AuthenticationError("IAM response did not contain an access token") from e

    expires_in = body.get("expires_in")
    if not isinstance(expires_in, int | float):
      return token, None
    return token, max(0.0, float(expires_in) - self._refresh_margin)


def apply_token(
  url: httpx.URL, headers: dict[str, str], token: str, scheme: TokenScheme
) -> tuple[httpx.URL, dict[str, str]]:
  """Attach a token to an upgrade request according to the provider's scheme."""
  if scheme is TokenScheme.ACCESS_TOKEN_QUERY:
    return url.copy_set_param("access_token", token), dict(headers)
  return url, {**headers, WebSocketHeaders.WATSON_TOKEN.value: token}
