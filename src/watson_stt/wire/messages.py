"""
Control and result messages exchanged with the recognition service.

Client messages carry an ``action`` key. Server messages have no common type field and are
told apart by their top-level key (``state``, ``results``/``result_index`` or ``error``).
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from watson_stt.wire.results import RecognitionResult, SpeakerLabel
from watson_stt.wire.settings import RecognitionSettings


class WebSocketHeaders(StrEnum):
  WATSON_TOKEN = "X-Watson-Authorization-Token"
  WATSON_METADATA = "X-Watson-Metadata"


class ServiceState(StrEnum):
  LISTENING = "listening"


class StopMessage(BaseModel):
  """Signals the end of the audio for the current recognition request."""

  action: Literal["stop"] = "stop"


class StartMessage(BaseModel):
  """Opens a recognition request. Settings are flattened next to the action."""

  action: Literal["start"] = "start"
  settings: RecognitionSettings

  def wire_payload(self) -> dict[str, object]:
    return {"action": self.action, **self.settings.wire_fields()}


class StateMessage(BaseModel):
  """Readiness signal. ``listening`` means the service is ready for (more) audio."""

  model_config = ConfigDict(frozen=True)

  state: str


class ResultsMessage(BaseModel):
  """New or updated results starting at ``result_index``."""

  model_config = ConfigDict(frozen=True)

  result_index: int = Field(default=0, ge=0)
  """Changepoint: every position below this index is stable."""

  results: list[RecognitionResult] = Field(default_factory=list)
  speaker_labels: list[SpeakerLabel] | None = None
  warnings: list[str] | None = None


class ErrorMessage(BaseModel):
  """Service-side error. Always terminal."""

  model_config = ConfigDict(frozen=True)

  error: str
  code: int | None = None
  warnings: list[str] | None = None
