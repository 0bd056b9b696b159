"""
Duplex message transport for the recognition session.

The session composes a transport rather than extending a socket class. A transport only
moves frames and reports what happened to its listener; retry, queueing and protocol logic
stay in the session.
"""

import asyncio
from collections.abc import Callable
from typing import Protocol, TypeAlias

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import (
  ConnectionClosed,
  ConnectionClosedOK,
  InvalidStatus,
  WebSocketException,
)
from websockets.frames import CloseCode

from watson_stt.common import get_logger
from watson_stt.errors import TransportError

AUTH_FAILURE_STATUS_CODES = frozenset({401, 403})
NORMAL_CLOSE_CODES = frozenset({CloseCode.NORMAL_CLOSURE, CloseCode.GOING_AWAY})

ErrorPredicate: TypeAlias = Callable[[BaseException], bool]


class TransportListener(Protocol):
  """Receives transport events. Called on the event loop that owns the transport."""

  def on_connect(self) -> None: ...

  def on_disconnect(self, error: BaseException | None) -> None:
    """
    Report that the connection ended or could not be established.

    :param error: Why, or None for a clean close.
    """
    ...

  def on_text(self, text: str) -> None: ...

  def on_data(self, data: bytes) -> None: ...


class Transport(Protocol):
  """
  A message channel that can send text and binary frames.

  ``connect`` never raises for connection failures; they are reported to the listener
  through ``on_disconnect`` so that handshake rejections and dropped connections share one
  path.
  """

  async def connect(self, url: str, headers: dict[str, str]) -> None: ...

  async def send(self, frame: str | bytes) -> None:
    """
    Send one frame.

    :raises TransportError: If the connection is not open.
    """
    ...

  async def ping(self, data: bytes = b"") -> None: ...

  async def disconnect(self) -> None: ...


TransportFactory: TypeAlias = Callable[[TransportListener], Transport]


def is_authentication_failure(error: BaseException) -> bool:
  """Default check for an upgrade the service refused because of the token."""
  return (
    isinstance(error, InvalidStatus) and error.response.status_code in AUTH_FAILURE_STATUS_CODES
  )


def is_normal_closure(error: BaseException) -> bool:
  """Default check for a close that ends the session without error (e.g. inactivity)."""
  if isinstance(error, ConnectionClosedOK):
    return True
  if isinstance(error, ConnectionClosed) and error.rcvd is not None:
    return error.rcvd.code in NORMAL_CLOSE_CODES
  return False


def closed_connection_error(error: ConnectionClosed) -> TransportError:
  """Describe an abnormal close, keeping the close code the service sent."""
  frame = error.rcvd or error.sent
  if frame is None:
    closed = TransportError("Connection lost without a close frame")
  else:
    closed = TransportError(
      f"Connection closed: {frame.reason or 'no reason given'}", code=int(frame.code)
    )
  closed.__cause__ = error
  return closed


class WebSocketTransport:
  """Transport over the ``websockets`` asyncio client."""

  def __init__(
    self,
    listener: TransportListener,
    open_timeout: float = 10.0,
    close_timeout: float = 5.0,
  ) -> None:
    self.listener = listener
    self.open_timeout = open_timeout
    self.close_timeout = close_timeout
    self.logger = get_logger("ws/transport")

    self.ws: ClientConnection | None = None
    self._receive_task: asyncio.Task[None] | None = None

  async def connect(self, url: str, headers: dict[str, str]) -> None:
    """Open the WebSocket connection and start delivering messages to the listener."""
    try:
      self.ws = await ws_connect(
        url,
        additional_headers=headers,
        open_timeout=self.open_timeout,
        close_timeout=self.close_timeout,
        max_size=None,
      )
    except (OSError, TimeoutError, WebSocketException) as e:
      self.logger.debug("Connection attempt failed", error=repr(e))
      self.listener.on_disconnect(e)
      return

    self.listener.on_connect()
    self._receive_task = asyncio.create_task(self._receive_loop(self.ws))

  async def _receive_loop(self, ws: ClientConnection) -> None:
    error: BaseException | None = None
    try:
      async for message in ws:
        if isinstance(message, str):
          self.listener.on_text(message)
        else:
          self.listener.on_data(bytes(message))
    except ConnectionClosed as e:
      error = e
    except asyncio.CancelledError:
      raise
    except Exception as e:
      self.logger.exception("Error in receive loop")
      error = e

    if isinstance(error, ConnectionClosed):
      error = None if is_normal_closure(error) else closed_connection_error(error)
    elif error is None and ws.close_code not in (None, *NORMAL_CLOSE_CODES):
      error = TransportError(
        f"Connection closed: {ws.close_reason or 'no reason given'}", code=ws.close_code
      )

    if self.ws is ws:
      self.ws = None
    self.listener.on_disconnect(error)

  async def send(self, frame: str | bytes) -> None:
    if self.ws is None:
      raise TransportError("Cannot send on a closed connection")
    try:
      await self.ws.send(frame)
    except ConnectionClosed as e:
      raise TransportError(f"Connection closed while sending: {e}") from e

  async def ping(self, data: bytes = b"") -> None:
    if self.ws is None:
      raise TransportError("Cannot ping on a closed connection")
    try:
      await self.ws.ping(data)
    except ConnectionClosed as e:
      raise TransportError(f"Connection closed while pinging: {e}") from e

  async def disconnect(self) -> None:
    """Close the WebSocket connection. The receive loop reports the close to the listener."""
    if self.ws is not None:
      await self.ws.close()
