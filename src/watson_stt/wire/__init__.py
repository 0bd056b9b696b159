"""
Watson Speech to Text wire protocol package.

Contains the message types, settings and result structures exchanged with the streaming
recognition endpoint.
"""

from .codec import deserialize_message, serialize_message
from .messages import (
  ErrorMessage,
  ResultsMessage,
  ServiceState,
  StartMessage,
  StateMessage,
  StopMessage,
  WebSocketHeaders,
)
from .results import (
  KeywordResult,
  RecognitionResult,
  SpeakerLabel,
  SpeechRecognitionResults,
  Transcription,
  WordAlternative,
  WordAlternativeResults,
  WordConfidence,
  WordTimestamp,
)
from .settings import AudioFormat, RecognitionSettings, l16_content_type, validate_settings

__all__ = [
  "AudioFormat",
  "ErrorMessage",
  "KeywordResult",
  "RecognitionResult",
  "RecognitionSettings",
  "ResultsMessage",
  "ServiceState",
  "SpeakerLabel",
  "SpeechRecognitionResults",
  "StartMessage",
  "StateMessage",
  "StopMessage",
  "Transcription",
  "WebSocketHeaders",
  "WordAlternative",
  "WordAlternativeResults",
  "WordConfidence",
  "WordTimestamp",
  "deserialize_message",
  "l16_content_type",
  "serialize_message",
  "validate_settings",
]
