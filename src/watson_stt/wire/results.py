"""
Recognition result data types for wire protocol communication.

Contains the structures the service streams back while it transcribes. All models are
frozen so snapshots can be handed to client callbacks without copying.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _WireModel(BaseModel):
  model_config = ConfigDict(frozen=True, populate_by_name=True)


class WordTimestamp(_WireModel):
  """Start and end time of one word, sent as ``[word, start, end]``."""

  word: str
  start: float
  """Start time of the word in seconds from the beginning of the audio."""

  end: float
  """End time of the word in seconds from the beginning of the audio."""


class WordConfidence(_WireModel):
  """Confidence of one word, sent as ``[word, confidence]``."""

  word: str
  confidence: float = Field(ge=0.0, le=1.0)


def _pairs_to_dicts(value: Any, names: tuple[str, ...]) -> Any:
  if not isinstance(value, list):
    return value
  converted = []
  for item in value:
    if isinstance(item, list | tuple):
      if len(item) != len(names):
        raise ValueError(f"expected {len(names)} entries ({', '.join(names)}), got {len(item)}")
      converted.append(dict(zip(names, item, strict=True)))
    else:
      converted.append(item)
  return converted


class Transcription(_WireModel):
  """One candidate transcript for a result."""

  transcript: str
  confidence: float | None = Field(default=None, ge=0.0, le=1.0)
  """Only the top alternative of a final result carries a confidence score."""

  timestamps: list[WordTimestamp] | None = None
  word_confidence: list[WordConfidence] | None = None

  @field_validator("timestamps", mode="before")
  @classmethod
  def _decode_timestamps(cls, value: Any) -> Any:
    return _pairs_to_dicts(value, ("word", "start", "end"))

  @field_validator("word_confidence", mode="before")
  @classmethod
  def _decode_word_confidence(cls, value: Any) -> Any:
    return _pairs_to_dicts(value, ("word", "confidence"))


class KeywordResult(_WireModel):
  """A spotted occurrence of a requested keyword."""

  normalized_text: str
  start_time: float
  end_time: float
  confidence: float = Field(ge=0.0, le=1.0)


class WordAlternative(_WireModel):
  word: str
  confidence: float = Field(ge=0.0, le=1.0)


class WordAlternativeResults(_WireModel):
  """Acoustically similar hypotheses for a single word position."""

  start_time: float
  end_time: float
  alternatives: list[WordAlternative]


class RecognitionResult(_WireModel):
  """One position in the evolving transcript."""

  is_final: bool = Field(alias="final")
  """Once true, the service guarantees this position will not change again."""

  alternatives: list[Transcription] = Field(min_length=1)
  """Candidate transcripts, best first."""

  keywords_result: dict[str, list[KeywordResult]] | None = None
  word_alternatives: list[WordAlternativeResults] | None = None

  @property
  def best(self) -> Transcription:
    """Return the top alternative."""
    return self.alternatives[0]


class SpeakerLabel(_WireModel):
  """Speaker attribution for a span of audio."""

  start: float = Field(alias="from")
  end: float = Field(alias="to")
  speaker: int
  confidence: float = Field(ge=0.0, le=1.0)
  is_final: bool = Field(default=False, alias="final")


class SpeechRecognitionResults(_WireModel):
  """Immutable snapshot of everything recognized in a session so far."""

  results: tuple[RecognitionResult, ...] = ()
  speaker_labels: tuple[SpeakerLabel, ...] = ()

  @property
  def final_results(self) -> tuple[RecognitionResult, ...]:
    return tuple(result for result in self.results if result.is_final)

  @property
  def best_transcript(self) -> str:
    """Return the top alternative of every result joined into one string."""
    parts = [result.best.transcript.strip() for result in self.results]
    return " ".join(part for part in parts if part)
