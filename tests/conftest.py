"""Shared fakes for driving recognition sessions without a network."""

import asyncio
import json
import sys
import types

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from watson_stt.client.auth import TokenScheme
from watson_stt.errors import TransportError

LISTENING = json.dumps({"state": "listening"})


def results_message(result_index: int, *results: tuple[str, bool], **extra) -> str:
  """Build a results frame from ``(transcript, final)`` pairs."""
  payload = {
    "result_index": result_index,
    "results": [
      {"final": final, "alternatives": [{"transcript": transcript}]}
      for transcript, final in results
    ],
    **extra,
  }
  return json.dumps(payload)


def auth_rejection(status: int = 401) -> InvalidStatus:
  """The error websockets raises when the upgrade is refused."""
  return InvalidStatus(Response(status, "Unauthorized", Headers(), b""))


async def settle(rounds: int = 20) -> None:
  """Let queued callbacks and tasks on the loop run."""
  for _ in range(rounds):
    await asyncio.sleep(0)


class FakeTokenProvider:
  """Hands out numbered tokens and records how often it was asked."""

  def __init__(self, scheme: TokenScheme = TokenScheme.WATSON_HEADER) -> None:
    self.scheme = scheme
    self.generation = 1
    self.get_calls = 0
    self.refresh_calls = 0

  async def get_token(self) -> str:
    self.get_calls += 1
    return f"token-{self.generation}"

  async def refresh(self) -> str:
    self.refresh_calls += 1
    self.generation += 1
    return f"token-{self.generation}"


class FakeService:
  """
  Scripted stand-in for the recognition service.

  Acts as the session's transport factory. Every connection attempt creates a new
  ``FakeTransport``. The service acknowledges start messages, and answers a stop message
  with ``final_results`` followed by a ``listening`` state unless ``answer_stop`` is off.
  """

  def __init__(self) -> None:
    self.transports: list[FakeTransport] = []
    self.auth_rejections = 0
    self.hold_connect = False
    self.ack_start = True
    self.answer_stop = True
    self.final_results: list[str] = []

  def __call__(self, listener) -> "FakeTransport":
    transport = FakeTransport(self, listener)
    self.transports.append(transport)
    return transport

  @property
  def transport(self) -> "FakeTransport":
    return self.transports[-1]

  @property
  def frames(self) -> list[str | bytes]:
    """Every frame the service received, across all connections."""
    return [frame for transport in self.transports for frame in transport.frames]

  @property
  def actions(self) -> list[str]:
    """The text control actions and audio frames received, in order."""
    return [
      json.loads(frame)["action"] if isinstance(frame, str) else "audio" for frame in self.frames
    ]


class FakeTransport:
  def __init__(self, service: FakeService, listener) -> None:
    self.service = service
    self.listener = listener
    self.url: str | None = None
    self.headers: dict[str, str] = {}
    self.frames: list[str | bytes] = []
    self.pings: list[bytes] = []
    self.is_open = False
    self.disconnect_calls = 0
    self._connect_gate = asyncio.Event()

  async def connect(self, url: str, headers: dict[str, str]) -> None:
    self.url = url
    self.headers = dict(headers)

    if self.service.auth_rejections > 0:
      self.service.auth_rejections -= 1
      self.listener.on_disconnect(auth_rejection())
      return

    if self.service.hold_connect:
      await self._connect_gate.wait()

    self.is_open = True
    self.listener.on_connect()

  def release(self) -> None:
    """Complete a connection held by ``hold_connect``."""
    self._connect_gate.set()

  async def send(self, frame: str | bytes) -> None:
    if not self.is_open:
      raise TransportError("Cannot send on a closed connection")
    self.frames.append(frame)

    if isinstance(frame, str):
      action = json.loads(frame).get("action")
      if action == "start" and self.service.ack_start:
        self.push(LISTENING)
      elif action == "stop" and self.service.answer_stop:
        for text in self.service.final_results:
          self.push(text)
        self.push(LISTENING)

  async def ping(self, data: bytes = b"") -> None:
    if not self.is_open:
      raise TransportError("Cannot ping on a closed connection")
    self.pings.append(data)

  async def disconnect(self) -> None:
    self.disconnect_calls += 1
    if self.is_open:
      self.is_open = False
      asyncio.get_running_loop().call_soon(self.listener.on_disconnect, None)

  # Server side

  def push(self, text: str) -> None:
    """Deliver a text frame from the service on a later loop iteration."""
    asyncio.get_running_loop().call_soon(self.listener.on_text, text)

  def drop(self, error: BaseException | None) -> None:
    """Close the connection from the service side."""
    self.is_open = False
    self.listener.on_disconnect(error)


class Recorder:
  """Collects everything a session reports through its callbacks."""

  def __init__(self) -> None:
    self.finals = []
    self.interims = []
    self.errors = []

  def on_final(self, result) -> None:
    self.finals.append(result)

  def on_interim(self, results) -> None:
    self.interims.append(results)

  def on_error(self, error) -> None:
    self.errors.append(error)

  @property
  def final_transcripts(self) -> list[str]:
    return [result.best.transcript for result in self.finals]


@pytest.fixture
def service() -> FakeService:
  return FakeService()


@pytest.fixture
def token_provider() -> FakeTokenProvider:
  return FakeTokenProvider()


@pytest.fixture
def recorder() -> Recorder:
  return Recorder()


class FakeOpusEncoder:
  """Stands in for ``opuslib.Encoder``: every frame becomes a fixed-size packet."""

  packet_size = 10

  def __init__(self, fs: int, channels: int, application: int) -> None:
    self.fs = fs
    self.channels = channels
    self.application = application
    self.frames: list[tuple[bytes, int]] = []

  def encode(self, pcm: bytes, frame_size: int) -> bytes:
    self.frames.append((pcm, frame_size))
    return bytes([len(self.frames) % 256]) * self.packet_size


@pytest.fixture
def fake_opuslib(monkeypatch):
  """Replace opuslib so Ogg Opus streams can be built without the native libopus."""
  module = types.ModuleType("opuslib")
  module.APPLICATION_VOIP = 2048
  module.Encoder = FakeOpusEncoder
  monkeypatch.setitem(sys.modules, "opuslib", module)
  monkeypatch.delitem(sys.modules, "watson_stt.client.opus", raising=False)
  yield module
