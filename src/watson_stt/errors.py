"""
Error taxonomy for streaming speech recognition.

Every error that reaches a client through ``on_error`` or a ``SessionOutcome`` is a
``SpeechToTextError``. Only ``ConfigurationError`` is ever raised synchronously, from
``StreamingTranscriptionSession.start`` and ``start_request``.
"""


class SpeechToTextError(Exception):
  """Base class for all speech recognition errors."""

  def __init__(self, message: str, code: int | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.code = code
    self.discarded_frames = 0
    """Number of queued outbound frames that were dropped when this error closed a session."""

  def __str__(self) -> str:
    if self.code is None:
      return self.message
    return f"{self.message} (code {self.code})"


class ConfigurationError(SpeechToTextError, ValueError):
  """Recognition settings or client configuration failed pre-flight validation."""

  def __init__(self, problems: list[str]) -> None:
    super().__init__("Invalid recognition settings: " + "; ".join(problems))
    self.problems = problems


class AuthenticationError(SpeechToTextError):
  """A token could not be obtained, or the service kept rejecting it."""


class ProtocolError(SpeechToTextError):
  """A service message did not match any known shape, or broke the result protocol."""


class FinalizedResultError(ProtocolError):
  """A result update targeted a position that the service had already declared final."""

  def __init__(self, index: int) -> None:
    super().__init__(f"Result {index} is final and cannot be updated")
    self.index = index


class ServiceError(SpeechToTextError):
  """The service reported an error payload. Always terminal."""


class TransportError(SpeechToTextError):
  """The underlying connection failed for a reason unrelated to authentication."""


class SessionClosedError(TransportError):
  """An operation was attempted on, or left queued in, a closed session."""
