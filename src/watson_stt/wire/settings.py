"""
Recognition settings and pre-flight validation.

Settings are frozen once built. Structural typing is enforced by pydantic at construction
time; the semantic checks a session needs before it may open a connection live in
``validate_settings`` so that they surface as ``ConfigurationError`` from ``start()``.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from watson_stt.errors import ConfigurationError


class AudioFormat(StrEnum):
  """Content types accepted by the recognition service."""

  FLAC = "audio/flac"
  WAV = "audio/wav"
  OGG_OPUS = "audio/ogg;codecs=opus"


def l16_content_type(rate: int = 16000, channels: int = 1) -> str:
  """Build the content type for raw little-endian 16-bit PCM."""
  if rate <= 0 or channels <= 0:
    raise ValueError("rate and channels must be positive")
  return f"audio/l16;rate={rate};channels={channels}"


class RecognitionSettings(BaseModel):
  """
  Per-request configuration, sent to the service inside the start message.

  Any field left as ``None`` is omitted from the wire and falls back to the service default.
  """

  model_config = ConfigDict(frozen=True, populate_by_name=True)

  content_type: str | None = Field(default=None, alias="content-type")
  """Format of the audio that will be streamed, e.g. ``audio/flac``."""

  inactivity_timeout: int | None = None
  """Seconds of silence after which the service closes the connection. -1 disables it."""

  keywords: list[str] | None = None
  """Keywords to spot in the audio."""

  keywords_threshold: float | None = None
  """Minimum confidence for a keyword match to be reported."""

  max_alternatives: int | None = None
  """Maximum number of alternative transcripts per result."""

  interim_results: bool | None = None
  """Whether the service should send non-final hypotheses."""

  word_alternatives_threshold: float | None = None
  """Minimum confidence for acoustically similar word alternatives to be reported."""

  word_confidence: bool | None = None
  timestamps: bool | None = None
  filter_profanity: bool | None = Field(default=None, alias="profanity_filter")
  smart_formatting: bool | None = None
  speaker_labels: bool | None = None
  customization_weight: float | None = None
  grammar_name: str | None = None
  redaction: bool | None = None

  continuous: bool | None = None
  """Keep listening across pauses instead of ending the utterance at the first final result."""

  def wire_fields(self) -> dict[str, object]:
    """Return the non-default fields keyed by their wire names."""
    return self.model_dump(by_alias=True, exclude_none=True)


def _check_unit_interval(name: str, value: float | None, problems: list[str]) -> None:
  if value is not None and not 0.0 <= value <= 1.0:
    problems.append(f"{name} must be between 0.0 and 1.0, got {value}")


def validate_settings(settings: RecognitionSettings) -> RecognitionSettings:
  """
  Check the settings a session is about to send.

  :param settings: The settings to check.
  :returns: The same settings, for chaining.
  :raises ConfigurationError: Listing every violation found.
  """
  problems: list[str] = []

  if not settings.content_type:
    problems.append("content_type is required")

  _check_unit_interval("keywords_threshold", settings.keywords_threshold, problems)
  _check_unit_interval(
    "word_alternatives_threshold", settings.word_alternatives_threshold, problems
  )
  _check_unit_interval("customization_weight", settings.customization_weight, problems)

  if settings.max_alternatives is not None and settings.max_alternatives < 1:
    problems.append(f"max_alternatives must be at least 1, got {settings.max_alternatives}")

  if settings.keywords_threshold is not None and not settings.keywords:
    problems.append("keywords_threshold requires a non-empty keywords list")

  if settings.keywords and any(not keyword.strip() for keyword in settings.keywords):
    problems.append("keywords must not contain blank entries")

  if problems:
    raise ConfigurationError(problems)

  return settings
