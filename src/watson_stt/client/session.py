"""
Streaming transcription session.

Drives one recognition exchange over a duplex transport: token authentication with bounded
retry, a strictly FIFO write queue that only runs while the transport is connected, and
incremental reconciliation of the results the service streams back.

Everything that mutates session state runs on the event loop the session was started on.
Transport callbacks are synchronous and run there too, and the single writer task never
holds state across an ``await``, so no locking is needed. Every public write is marshalled
with ``call_soon_threadsafe``, including writes made on the loop itself, so writes from any
mix of threads reach the queue in the order they were made.
"""

import asyncio
import secrets
from collections import deque
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeAlias

import httpx

from watson_stt.client.accumulator import ResultsAccumulator
from watson_stt.client.auth import TokenProvider, apply_token
from watson_stt.client.transport import (
  ErrorPredicate,
  Transport,
  TransportFactory,
  WebSocketTransport,
  is_authentication_failure,
  is_normal_closure,
)
from watson_stt.common import get_logger
from watson_stt.errors import (
  AuthenticationError,
  ProtocolError,
  ServiceError,
  SessionClosedError,
  SpeechToTextError,
  TransportError,
)
from watson_stt.wire import (
  ErrorMessage,
  RecognitionResult,
  RecognitionSettings,
  ResultsMessage,
  ServiceState,
  SpeechRecognitionResults,
  StartMessage,
  StateMessage,
  StopMessage,
  deserialize_message,
  serialize_message,
  validate_settings,
)


class SessionState(StrEnum):
  DISCONNECTED = "disconnected"
  CONNECTING = "connecting"
  LISTENING = "listening"
  REQUEST_STARTED = "request-started"
  RECEIVING_RESULTS = "receiving-results"
  CLOSED = "closed"


class _OperationKind(StrEnum):
  START = "start"
  AUDIO = "audio"
  STOP = "stop"
  PING = "ping"
  AWAIT_RESULTS = "await-results"
  DISCONNECT = "disconnect"


_FRAME_KINDS = frozenset(
  {_OperationKind.START, _OperationKind.AUDIO, _OperationKind.STOP, _OperationKind.PING}
)


@dataclass(frozen=True)
class _Operation:
  kind: _OperationKind
  payload: str | bytes = b""


@dataclass(frozen=True)
class SessionOutcome:
  """How a session ended, together with everything it recognized."""

  results: SpeechRecognitionResults
  error: SpeechToTextError | None = None
  aborted: bool = False

  @property
  def ok(self) -> bool:
    return self.error is None and not self.aborted


FinalCallback: TypeAlias = Callable[[RecognitionResult], None]
InterimCallback: TypeAlias = Callable[[SpeechRecognitionResults], None]
ErrorCallback: TypeAlias = Callable[[SpeechToTextError], None]
LifecycleCallback: TypeAlias = Callable[[], None]


class _AttemptListener:
  """Routes transport events to the session, dropping those from superseded attempts."""

  def __init__(self, session: "StreamingTranscriptionSession", attempt: int) -> None:
    self._session = session
    self._attempt = attempt

  def _current(self, event: str) -> bool:
    if self._session._attempt == self._attempt:
      return True
    self._session.logger.debug("Dropping stale transport event", event=event, attempt=self._attempt)
    return False

  def on_connect(self) -> None:
    if self._current("connect"):
      self._session._on_connect()

  def on_disconnect(self, error: BaseException | None) -> None:
    if self._current("disconnect"):
      self._session._on_disconnect(error)

  def on_text(self, text: str) -> None:
    if self._current("text"):
      self._session._on_text(text)

  def on_data(self, data: bytes) -> None:
    if self._current("data"):
      self._session.logger.debug("Ignoring binary frame from service", size=len(data))


class StreamingTranscriptionSession:
  """
  One WebSocket recognition exchange.

  A session is single use: ``start`` it once, feed it audio through the returned handle,
  then ``stop`` (drain and disconnect) or ``abort`` (discard and disconnect).
  """

  def __init__(
    self,
    url: str,
    token_provider: TokenProvider,
    transport_factory: TransportFactory = WebSocketTransport,
    *,
    headers: dict[str, str] | None = None,
    max_retries: int = 1,
    max_protocol_errors: int = 3,
    is_authentication_failure: ErrorPredicate = is_authentication_failure,
    is_normal_closure: ErrorPredicate = is_normal_closure,
    session_id: str | None = None,
  ) -> None:
    """
    :param url: Recognition endpoint, including any model/customization query parameters.
    :param token_provider: Supplies the token presented on each connection attempt.
    :param transport_factory: Builds a transport bound to a listener. Called once per attempt.
    :param headers: Extra headers for the upgrade request.
    :param max_retries: Reconnects allowed after authentication failures before giving up.
    :param max_protocol_errors: Consecutive protocol errors tolerated before closing.
    :param is_authentication_failure: Classifies disconnect errors caused by a rejected token.
    :param is_normal_closure: Classifies disconnect errors that end the session cleanly.
    """
    if max_retries < 0:
      raise ValueError("max_retries cannot be negative")
    if max_protocol_errors < 1:
      raise ValueError("max_protocol_errors must be at least 1")

    self.url = httpx.URL(url)
    self.token_provider = token_provider
    self.transport_factory = transport_factory
    self.headers = dict(headers or {})
    self.max_retries = max_retries
    self.max_protocol_errors = max_protocol_errors
    self.is_authentication_failure = is_authentication_failure
    self.is_normal_closure = is_normal_closure
    self.session_id = session_id or secrets.token_hex(2)
    self.logger = get_logger("stt/session", session=self.session_id)

    self.retry_count = 0
    self._state = SessionState.DISCONNECTED
    self._accumulator = ResultsAccumulator()
    self._pending: deque[_Operation] = deque()
    self._protocol_errors = 0

    self._loop: asyncio.AbstractEventLoop | None = None
    self._transport: Transport | None = None
    self._attempt = 0
    self._connection_id = 0
    self._connected = False
    self._awaiting_results = False
    self._unacknowledged_starts = 0
    self._audio_sent = False
    self._requests_started = 0
    self._request_open = False
    self._stop_requested = False
    self._disconnect_requested = False

    self._on_final: FinalCallback | None = None
    self._on_interim: InterimCallback | None = None
    self._on_error: ErrorCallback | None = None
    self._on_connected: LifecycleCallback | None = None
    self._on_listening: LifecycleCallback | None = None
    self._on_disconnected: LifecycleCallback | None = None
    self._outcome: asyncio.Future[SessionOutcome] | None = None
    self._ready = asyncio.Event()
    self._has_work = asyncio.Event()
    self._progress = asyncio.Event()
    self._background_tasks: set[asyncio.Task[Any]] = set()

  # Public API

  @property
  def state(self) -> SessionState:
    return self._state

  @property
  def results(self) -> SpeechRecognitionResults:
    return self._accumulator.snapshot()

  @property
  def pending_operations(self) -> int:
    return len(self._pending)

  def start(
    self,
    settings: RecognitionSettings,
    on_final: FinalCallback,
    on_error: ErrorCallback,
    on_interim: InterimCallback | None = None,
    *,
    on_connect: LifecycleCallback | None = None,
    on_listening: LifecycleCallback | None = None,
    on_disconnect: LifecycleCallback | None = None,
  ) -> "RecognitionHandle":
    """
    Validate the settings, queue the start message and begin connecting.

    Must be called from a running event loop. Callbacks run on that loop.

    :param settings: Recognition settings for this request.
    :param on_final: Called once for every result that becomes final.
    :param on_error: Called for every error after ``start`` returns.
    :param on_interim: Called with a snapshot whenever an interim result changes.
    :param on_connect: Called each time a connection to the service opens.
    :param on_listening: Called each time the service reports that it is listening, both
      when it accepts a start message and when it has finished a request.
    :param on_disconnect: Called once when the session closes, however it ends.
    :returns: Handle used to stream audio and end the session.
    :raises ConfigurationError: If the settings fail validation. Nothing is sent.
    :raises RuntimeError: If the session was already started or no loop is running.
    """
    if self._loop is not None:
      raise RuntimeError("A session can only be started once")

    validate_settings(settings)
    self._loop = asyncio.get_running_loop()
    self._on_final = on_final
    self._on_error = on_error
    self._on_interim = on_interim
    self._on_connected = on_connect
    self._on_listening = on_listening
    self._on_disconnected = on_disconnect
    self._outcome = self._loop.create_future()

    self.logger.info(
      "Starting recognition session", url=str(self.url), content_type=settings.content_type
    )
    self._spawn(self._write_loop())
    start = StartMessage(settings=settings)
    self._enqueue(_Operation(_OperationKind.START, serialize_message(start)))
    return RecognitionHandle(self)

  def send_audio(self, chunk: bytes) -> None:
    """Queue a binary audio frame. Safe to call from any thread."""
    if not chunk:
      self.logger.debug("Ignoring empty audio chunk")
      return
    self._submit([_Operation(_OperationKind.AUDIO, bytes(chunk))])

  def ping(self, data: bytes = b"") -> None:
    """Queue a keepalive ping. Safe to call from any thread."""
    self._submit([_Operation(_OperationKind.PING, data)])

  def start_request(self, settings: RecognitionSettings) -> None:
    """
    Queue another recognition request on the same connection.

    Use after ``stop_request``. The results are cleared when the start message is sent, so
    ``results`` and the final outcome describe the latest request. Safe to call from any
    thread.

    :raises ConfigurationError: If the settings fail validation. Nothing is queued.
    """
    if self._loop is None:
      raise RuntimeError("Session has not been started")
    validate_settings(settings)
    start = StartMessage(settings=settings)
    self._submit([_Operation(_OperationKind.START, serialize_message(start))])

  def stop_request(self) -> None:
    """
    End the current request but keep the connection open.

    Later writes wait until the service has delivered the request's final results. Safe to
    call from any thread.
    """
    self._submit(
      [
        _Operation(_OperationKind.STOP, serialize_message(StopMessage())),
        _Operation(_OperationKind.AWAIT_RESULTS),
      ]
    )

  def stop(self) -> None:
    """
    End the request: queue the stop message, wait for the final results, then disconnect.

    Safe to call from any thread. Calling it again has no effect.
    """
    self._call_on_loop(self._request_stop)

  def abort(self) -> None:
    """Discard queued frames and tear down the connection immediately."""
    self._call_on_loop(self._abort)

  async def wait(self) -> SessionOutcome:
    """Wait for the session to close and return how it ended."""
    if self._outcome is None:
      raise RuntimeError("Session has not been started")
    return await asyncio.shield(self._outcome)

  async def drain(self, limit: int = 0) -> None:
    """
    Wait until at most ``limit`` operations are queued, or the session has closed.

    Producers running on the event loop await this between chunks to stay a bounded
    distance ahead of the connection.
    """
    # Writes already handed to the loop reach the queue first.
    await asyncio.sleep(0)
    while len(self._pending) > limit and self._state is not SessionState.CLOSED:
      self._progress.clear()
      await self._progress.wait()

  # Loop marshalling

  def _call_on_loop(self, func: Callable[..., None], *args: Any) -> None:
    if self._loop is None:
      raise RuntimeError("Session has not been started")
    # Queued even on the loop thread, behind any writes handed over by other threads.
    self._loop.call_soon_threadsafe(func, *args)

  def _submit(self, operations: list[_Operation]) -> None:
    self._call_on_loop(self._enqueue_all, operations)

  def _enqueue_all(self, operations: list[_Operation]) -> None:
    for operation in operations:
      self._enqueue(operation)

  def _enqueue(self, operation: _Operation, internal: bool = False) -> None:
    if self._state is SessionState.CLOSED or (self._stop_requested and not internal):
      self._notify_error(
        SessionClosedError(f"Cannot queue {operation.kind} after the session was stopped")
      )
      return

    if operation.kind in (_OperationKind.START, _OperationKind.AUDIO):
      self._request_open = True
    elif operation.kind is _OperationKind.STOP:
      self._request_open = False

    self._pending.append(operation)
    self._has_work.set()
    if self._state is SessionState.DISCONNECTED:
      self._begin_connect(refresh=False)

  def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
    assert self._loop is not None
    task = self._loop.create_task(coro)
    self._background_tasks.add(task)
    task.add_done_callback(self._background_tasks.discard)

  # State machine

  def _set_state(self, state: SessionState) -> None:
    if state is not self._state:
      self.logger.debug("State change", old=self._state.value, new=state.value)
      self._state = state
    self._update_ready()

  def _update_ready(self) -> None:
    """The writer may run while connected and not waiting for results, or once closed."""
    closed = self._state is SessionState.CLOSED
    if closed or (self._connected and not self._awaiting_results):
      self._ready.set()
    else:
      self._ready.clear()

  def _begin_connect(self, refresh: bool) -> None:
    self._set_state(SessionState.CONNECTING)
    self._attempt += 1
    self._spawn(self._connect(self._attempt, refresh))

  async def _connect(self, attempt: int, refresh: bool) -> None:
    try:
      if refresh:
        token = await self.token_provider.refresh()
      else:
        token = await self.token_provider.get_token()
    except AuthenticationError as e:
      self._fail(e)
      return
    except Exception as e:
      self.logger.exception("Token provider failed")
      self._fail(AuthenticationError(f"Failed to obtain an authentication token: {e}"))
      return

    if self._state is not SessionState.CONNECTING or attempt != self._attempt:
      return

    url, headers = apply_token(self.url, self.headers, token, self.token_provider.scheme)
    self.logger.debug("Connecting", attempt=attempt, retry=self.retry_count)
    self._transport = self.transport_factory(_AttemptListener(self, attempt))
    try:
      await self._transport.connect(str(url), headers)
    except Exception as e:
      self.logger.exception("Transport failed to connect")
      self._on_disconnect(e)

  def _on_connect(self) -> None:
    if self._state is SessionState.CLOSED:
      self._spawn(self._disconnect_transport())
      return

    self.logger.info("Connected", retries=self.retry_count)
    self._connected = True
    self._connection_id += 1
    self.retry_count = 0
    self._awaiting_results = False
    self._set_state(SessionState.LISTENING)
    if self._on_connected is not None:
      self._notify(self._on_connected)

  def _on_disconnect(self, error: BaseException | None) -> None:
    self._connected = False
    self._update_ready()

    if self._state is SessionState.CLOSED:
      return

    if self._disconnect_requested:
      self.logger.info("Disconnected after stop", results=len(self._accumulator))
      self._finish()
      return

    if error is not None and self.is_authentication_failure(error):
      if self.retry_count >= self.max_retries:
        self._fail(AuthenticationError("Invalid HTTP upgrade. Check credentials?", code=401))
        return
      self.retry_count += 1
      self.logger.warning(
        "Authentication rejected, refreshing token", retry=self.retry_count, limit=self.max_retries
      )
      self._begin_connect(refresh=True)
      return

    if error is None or self.is_normal_closure(error):
      self.logger.info("Service closed the connection", results=len(self._accumulator))
      self._finish()
      return

    if isinstance(error, SpeechToTextError):
      self._fail(error)
    else:
      self._fail(TransportError(f"Connection failed: {error!r}"))

  def _request_stop(self) -> None:
    if self._stop_requested or self._state is SessionState.CLOSED:
      return
    self._stop_requested = True
    operations = [_Operation(_OperationKind.AWAIT_RESULTS), _Operation(_OperationKind.DISCONNECT)]
    # A request already ended with stop_request needs no second stop message.
    if self._request_open:
      operations.insert(0, _Operation(_OperationKind.STOP, serialize_message(StopMessage())))
    for operation in operations:
      self._enqueue(operation, internal=True)

  def _abort(self) -> None:
    if self._state is SessionState.CLOSED:
      return
    discarded = self._close()
    self.logger.info("Session aborted", discarded=discarded)
    self._resolve(SessionOutcome(self._accumulator.snapshot(), aborted=True))
    self._spawn(self._disconnect_transport())

  def _close(self) -> int:
    """Enter the terminal state and drop the queue. Returns the number of frames dropped."""
    discarded = sum(1 for operation in self._pending if operation.kind in _FRAME_KINDS)
    self._pending.clear()
    self._set_state(SessionState.CLOSED)
    self._has_work.set()
    self._progress.set()
    return discarded

  def _finish(self) -> None:
    discarded = self._close()
    error: SpeechToTextError | None = None
    if discarded:
      error = SessionClosedError("Connection closed before all queued frames were sent")
      error.discarded_frames = discarded
      self.logger.warning("Session closed with queued frames", discarded=discarded)
      self._notify_error(error)
    self._resolve(SessionOutcome(self._accumulator.snapshot(), error=error))

  def _fail(self, error: SpeechToTextError) -> None:
    if self._state is SessionState.CLOSED:
      return
    error.discarded_frames = self._close()
    self.logger.error("Session failed", error=str(error), discarded=error.discarded_frames)
    self._notify_error(error)
    self._resolve(SessionOutcome(self._accumulator.snapshot(), error=error))
    if self._connected:
      self._spawn(self._disconnect_transport())

  def _resolve(self, outcome: SessionOutcome) -> None:
    if self._on_disconnected is not None:
      self._notify(self._on_disconnected)
    if self._outcome is not None and not self._outcome.done():
      self._outcome.set_result(outcome)

  async def _disconnect_transport(self) -> None:
    if self._transport is None:
      return
    try:
      await self._transport.disconnect()
    except Exception:
      self.logger.exception("Error while disconnecting transport")

  # Writer

  async def _write_loop(self) -> None:
    """Send queued operations one at a time, in order, whenever the transport is ready."""
    while True:
      await self._has_work.wait()
      await self._ready.wait()
      if self._state is SessionState.CLOSED:
        return
      if not self._pending:
        self._has_work.clear()
        continue

      operation = self._pending[0]
      connection_id = self._connection_id
      try:
        await self._execute(operation)
      except TransportError as e:
        self.logger.debug("Write interrupted", kind=operation.kind.value, error=str(e))
        # The transport reports the disconnect itself; retry the same operation afterwards.
        if self._connection_id == connection_id and self._state is not SessionState.CLOSED:
          self._connected = False
          self._update_ready()
        continue
      except Exception as e:
        self.logger.exception("Unexpected error while writing", kind=operation.kind.value)
        self._fail(TransportError(f"Write failed: {e!r}"))
        return

      if self._pending and self._pending[0] is operation:
        self._pending.popleft()
        self._progress.set()

  async def _execute(self, operation: _Operation) -> None:
    assert self._transport is not None
    match operation.kind:
      case _OperationKind.START:
        self._begin_request()
        self._unacknowledged_starts += 1
        self._mark_request_started()
        try:
          await self._transport.send(operation.payload)
        except TransportError:
          self._unacknowledged_starts -= 1
          raise
      case _OperationKind.STOP:
        self._mark_request_started()
        await self._transport.send(operation.payload)
      case _OperationKind.AUDIO:
        self._mark_request_started()
        await self._transport.send(operation.payload)
        self._audio_sent = True
      case _OperationKind.PING:
        await self._transport.ping(bytes(operation.payload))
      case _OperationKind.AWAIT_RESULTS:
        if self._audio_sent and self._state in (
          SessionState.REQUEST_STARTED,
          SessionState.RECEIVING_RESULTS,
        ):
          self.logger.debug("Waiting for final results")
          self._awaiting_results = True
          self._update_ready()
      case _OperationKind.DISCONNECT:
        self._disconnect_requested = True
        await self._transport.disconnect()

  def _begin_request(self) -> None:
    # Earlier requests have delivered their finals behind the stop_request barrier.
    if self._requests_started and len(self._accumulator):
      self.logger.info("Starting another request", previous_results=len(self._accumulator))
      self._accumulator.reset()
    self._requests_started += 1
    self._audio_sent = False

  def _mark_request_started(self) -> None:
    if self._state is SessionState.LISTENING:
      self._set_state(SessionState.REQUEST_STARTED)

  # Inbound messages

  def _on_text(self, text: str) -> None:
    if self._state is SessionState.CLOSED:
      return

    try:
      message = deserialize_message(text)
    except ProtocolError as e:
      self.logger.warning("Unrecognized message from service", error=str(e))
      self._protocol_error(e)
      return

    match message:
      case ErrorMessage():
        self._fail(ServiceError(message.error, code=message.code))
      case StateMessage():
        self._protocol_errors = 0
        self._on_state_message(message)
      case ResultsMessage():
        self._on_results_message(message)

  def _on_state_message(self, message: StateMessage) -> None:
    if message.state != ServiceState.LISTENING:
      self.logger.debug("Ignoring service state", state=message.state)
      return

    if self._unacknowledged_starts > 0:
      self._unacknowledged_starts -= 1
      self.logger.debug("Service acknowledged start")
    else:
      if self._state in (SessionState.REQUEST_STARTED, SessionState.RECEIVING_RESULTS):
        self._set_state(SessionState.LISTENING)
      if self._awaiting_results:
        self.logger.debug("Final results received")
        self._awaiting_results = False
        self._update_ready()

    if self._on_listening is not None:
      self._notify(self._on_listening)

  def _on_results_message(self, message: ResultsMessage) -> None:
    for warning in message.warnings or ():
      self.logger.warning("Service warning", warning=warning)

    try:
      outcome = self._accumulator.add(message)
    except ProtocolError as e:
      self.logger.warning(
        "Rejected result update", result_index=message.result_index, error=str(e)
      )
      self._protocol_error(e)
      return

    self._protocol_errors = 0
    if self._state is SessionState.REQUEST_STARTED:
      self._set_state(SessionState.RECEIVING_RESULTS)

    if outcome.updated and self._on_interim is not None:
      self._notify(self._on_interim, self._accumulator.snapshot())
    for index in outcome.finalized:
      self.logger.debug("Result finalized", index=index)
      if self._on_final is not None:
        self._notify(self._on_final, self._accumulator[index])

  def _protocol_error(self, error: ProtocolError) -> None:
    self._protocol_errors += 1
    if self._protocol_errors >= self.max_protocol_errors:
      self._fail(
        ProtocolError(f"{self._protocol_errors} consecutive protocol errors, last: {error}")
      )
    else:
      self._notify_error(error)

  # Callbacks

  def _notify_error(self, error: SpeechToTextError) -> None:
    if self._on_error is not None:
      self._notify(self._on_error, error)

  def _notify(self, callback: Callable[..., None], *args: Any) -> None:
    try:
      callback(*args)
    except Exception:
      self.logger.exception("Client callback raised", callback=getattr(callback, "__name__", "?"))


class RecognitionHandle:
  """Client-side handle for a started session."""

  def __init__(self, session: StreamingTranscriptionSession) -> None:
    self._session = session

  @property
  def session_id(self) -> str:
    return self._session.session_id

  @property
  def state(self) -> SessionState:
    return self._session.state

  @property
  def results(self) -> SpeechRecognitionResults:
    return self._session.results

  def send_audio(self, chunk: bytes) -> None:
    self._session.send_audio(chunk)

  def ping(self, data: bytes = b"") -> None:
    self._session.ping(data)

  def start_request(self, settings: RecognitionSettings) -> None:
    self._session.start_request(settings)

  def stop_request(self) -> None:
    self._session.stop_request()

  def stop(self) -> None:
    self._session.stop()

  def abort(self) -> None:
    self._session.abort()

  async def drain(self, limit: int = 0) -> None:
    await self._session.drain(limit)

  async def wait(self) -> SessionOutcome:
    return await self._session.wait()

  # Async context manager protocol
  async def __aenter__(self) -> "RecognitionHandle":
    return self

  async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
    if exc_type is None:
      self.stop()
    else:
      self.abort()
    await self.wait()
