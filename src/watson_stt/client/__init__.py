"""
Watson Speech to Text streaming client library.

Runs recognition sessions over the service's WebSocket interface, with token
authentication, ordered audio streaming and incremental result reconciliation.
"""

from watson_stt.client.accumulator import ResultsAccumulator
from watson_stt.client.auth import (
  BasicAuthTokenProvider,
  IAMTokenProvider,
  StaticTokenProvider,
  TokenProvider,
  TokenScheme,
)
from watson_stt.client.config import ServiceConfig, load_config_from_file
from watson_stt.client.core import MicrophoneRecognition, SpeechToTextClient, build_recognize_url
from watson_stt.client.session import (
  RecognitionHandle,
  SessionOutcome,
  SessionState,
  StreamingTranscriptionSession,
)
from watson_stt.client.transport import Transport, TransportListener, WebSocketTransport

__all__ = [
  "BasicAuthTokenProvider",
  "IAMTokenProvider",
  "MicrophoneRecognition",
  "RecognitionHandle",
  "ResultsAccumulator",
  "ServiceConfig",
  "SessionOutcome",
  "SessionState",
  "SpeechToTextClient",
  "StaticTokenProvider",
  "StreamingTranscriptionSession",
  "TokenProvider",
  "TokenScheme",
  "Transport",
  "TransportListener",
  "WebSocketTransport",
  "build_recognize_url",
  "load_config_from_file",
]
