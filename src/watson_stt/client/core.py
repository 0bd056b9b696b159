"""
SpeechToTextClient: programmatic entry point for streaming recognition.

Builds sessions from a ``ServiceConfig`` and offers one-shot helpers for transcribing audio
files, in-memory audio and the microphone.
"""

import asyncio
from pathlib import Path

import httpx

from watson_stt.client.audio import audio_chunks, content_type_for_path
from watson_stt.client.auth import TokenProvider
from watson_stt.client.config import ServiceConfig, load_config_from_file
from watson_stt.client.session import (
  ErrorCallback,
  FinalCallback,
  InterimCallback,
  RecognitionHandle,
  SessionOutcome,
  SessionState,
  StreamingTranscriptionSession,
)
from watson_stt.client.transport import TransportFactory, WebSocketTransport
from watson_stt.common import get_logger
from watson_stt.errors import SpeechToTextError
from watson_stt.wire import AudioFormat, RecognitionResult, RecognitionSettings, WebSocketHeaders

logger = get_logger("stt/client")


def build_recognize_url(
  base_url: str,
  model: str | None = None,
  base_model_version: str | None = None,
  language_customization_id: str | None = None,
  acoustic_customization_id: str | None = None,
  learning_opt_out: bool = False,
) -> str:
  """
  Add the per-connection query parameters to the recognition endpoint.

  :param base_url: WebSocket recognition endpoint.
  :param model: Language model, e.g. ``en-US_BroadbandModel``.
  :param base_model_version: Version of the base model to use with a custom model.
  :param language_customization_id: GUID of a custom language model.
  :param acoustic_customization_id: GUID of a custom acoustic model.
  :param learning_opt_out: Ask the service not to log the request for training.
  """
  params = {
    "model": model,
    "base_model_version": base_model_version,
    "language_customization_id": language_customization_id,
    "acoustic_customization_id": acoustic_customization_id,
    "x-watson-learning-opt-out": "true" if learning_opt_out else None,
  }
  url = httpx.URL(base_url)
  for name, value in params.items():
    if value is not None:
      url = url.copy_set_param(name, value)
  return str(url)


def _log_error(error: SpeechToTextError) -> None:
  logger.error("Recognition error", error=str(error))


def _ignore_final(result: RecognitionResult) -> None:
  pass


class SpeechToTextClient:
  """
  Unified client for the Speech to Text streaming service.

  One client can run any number of independent sessions; each session gets its own
  transport and shares the client's token provider.
  """

  def __init__(
    self,
    config: ServiceConfig,
    token_provider: TokenProvider | None = None,
    transport_factory: TransportFactory = WebSocketTransport,
  ):
    """
    Initialize SpeechToTextClient.

    Args:
        config: Service endpoints, credentials and defaults.
        token_provider: Overrides the provider derived from the config's credentials.
        transport_factory: Builds the transport for each connection attempt.
    """
    self._config = config
    self._token_provider = token_provider or config.token_provider()
    self._transport_factory = transport_factory

  @classmethod
  def from_env(cls) -> "SpeechToTextClient":
    """Create a client configured from ``WATSON_STT_*`` environment variables."""
    return cls(ServiceConfig.from_env())

  @classmethod
  def from_file(cls, config_path: str | Path) -> "SpeechToTextClient":
    """Create a client configured from a YAML file."""
    return cls(load_config_from_file(config_path))

  @property
  def config(self) -> ServiceConfig:
    return self._config

  def session(
    self,
    model: str | None = None,
    base_model_version: str | None = None,
    language_customization_id: str | None = None,
    acoustic_customization_id: str | None = None,
    headers: dict[str, str] | None = None,
  ) -> StreamingTranscriptionSession:
    """
    Create an unstarted session.

    Args:
        model: Language model; defaults to the config's model.
        base_model_version: Base model version to use with custom models.
        language_customization_id: Custom language model GUID.
        acoustic_customization_id: Custom acoustic model GUID.
        headers: Extra headers for this session only.

    Returns:
        A session ready to be started.
    """
    url = build_recognize_url(
      self._config.websockets_url,
      model=model or self._config.model,
      base_model_version=base_model_version,
      language_customization_id=language_customization_id,
      acoustic_customization_id=acoustic_customization_id,
      learning_opt_out=self._config.learning_opt_out,
    )

    session_headers = dict(self._config.headers)
    if self._config.customer_id:
      session_headers[WebSocketHeaders.WATSON_METADATA.value] = (
        f"customer_id={self._config.customer_id}"
      )
    session_headers.update(headers or {})

    return StreamingTranscriptionSession(
      url,
      self._token_provider,
      self._transport_factory,
      headers=session_headers,
      max_retries=self._config.max_retries,
    )

  async def recognize(
    self,
    audio: bytes | str | Path,
    settings: RecognitionSettings,
    on_final: FinalCallback | None = None,
    on_error: ErrorCallback | None = None,
    on_interim: InterimCallback | None = None,
    model: str | None = None,
  ) -> SessionOutcome:
    """
    Transcribe a complete audio file or buffer and wait for the final results.

    When ``audio`` is a path and ``settings`` has no content type, it is inferred from the
    file suffix. Files are read on worker threads, and reading pauses while more than
    ``config.max_pending_chunks`` operations wait to be sent.

    :raises ConfigurationError: If the settings fail validation.
    :raises OSError: If the file cannot be read. The session is aborted.
    """
    if not isinstance(audio, bytes) and settings.content_type is None:
      settings = settings.model_copy(update={"content_type": content_type_for_path(audio)})

    session = self.session(model=model)
    handle = session.start(
      settings,
      on_final=on_final or _ignore_final,
      on_error=on_error or _log_error,
      on_interim=on_interim,
    )
    try:
      async for chunk in audio_chunks(audio, self._config.chunk_size):
        handle.send_audio(chunk)
        await handle.drain(self._config.max_pending_chunks)
        if handle.state is SessionState.CLOSED:
          logger.debug("Session closed while streaming audio", session=handle.session_id)
          break
    except (OSError, asyncio.CancelledError):
      handle.abort()
      raise
    handle.stop()
    return await handle.wait()

  async def recognize_microphone(
    self,
    settings: RecognitionSettings,
    on_final: FinalCallback,
    on_error: ErrorCallback | None = None,
    on_interim: InterimCallback | None = None,
    audio_device: str | int | None = None,
    model: str | None = None,
    compress: bool = False,
  ) -> "MicrophoneRecognition":
    """
    Stream microphone audio until ``MicrophoneRecognition.stop()`` is called.

    The microphone is captured as 16 kHz mono 16-bit PCM, so the settings' content type is
    replaced with the matching ``audio/l16`` type. With ``compress`` the PCM is encoded as
    Ogg Opus before it is sent, which needs the native libopus library.
    """
    from watson_stt.client.microphone import (
      CHANNELS,
      MICROPHONE_CONTENT_TYPE,
      SAMPLE_RATE,
      AudioCapture,
    )

    encoder = None
    content_type = MICROPHONE_CONTENT_TYPE
    if compress:
      from watson_stt.client.opus import OggOpusEncoder

      encoder = OggOpusEncoder(SAMPLE_RATE, CHANNELS)
      content_type = AudioFormat.OGG_OPUS.value

    settings = settings.model_copy(update={"content_type": content_type})
    error_callback = on_error or _log_error
    handle = self.session(model=model).start(
      settings, on_final=on_final, on_error=error_callback, on_interim=on_interim
    )
    if encoder is not None:
      handle.send_audio(encoder.header())

    recognition = MicrophoneRecognition(handle, encoder=encoder)
    recognition.capture = AudioCapture(
      on_audio=recognition.send_block,
      on_error=lambda message: logger.warning("Microphone problem", detail=message),
      audio_device=audio_device,
    )
    try:
      recognition.capture.start_recording()
    except Exception:
      handle.abort()
      raise
    return recognition


class MicrophoneRecognition:
  """A running microphone transcription."""

  def __init__(self, handle: RecognitionHandle, capture=None, encoder=None) -> None:
    self.handle = handle
    self.capture = capture
    self.encoder = encoder

  def send_block(self, pcm: bytes) -> None:
    """Forward one captured block, encoding it first when compressing."""
    if self.encoder is None:
      self.handle.send_audio(pcm)
      return
    pages = self.encoder.encode(pcm)
    if pages:
      self.handle.send_audio(pages)

  def stop(self) -> None:
    """Stop recording, then let the session drain and deliver its final results."""
    self.capture.stop_recording()
    if self.encoder is not None and self.handle.state is not SessionState.CLOSED:
      # Capture has stopped, so nothing else feeds the encoder.
      self.handle.send_audio(self.encoder.finish())
    self.handle.stop()

  def abort(self) -> None:
    self.capture.stop_recording()
    self.handle.abort()

  async def wait(self) -> SessionOutcome:
    outcome = await self.handle.wait()
    self.capture.stop_recording()
    return outcome
