"""
Incremental result reconciliation.

The service streams results as diffs from a changepoint: a message with ``result_index = i``
declares every position below ``i`` stable and carries replacements for ``i, i+1, ...``.
"""

from dataclasses import dataclass, field

from watson_stt.errors import FinalizedResultError, ProtocolError
from watson_stt.wire import (
  RecognitionResult,
  ResultsMessage,
  SpeakerLabel,
  SpeechRecognitionResults,
)


@dataclass
class ReconcileOutcome:
  """Positions touched by one reconciliation."""

  updated: list[int] = field(default_factory=list)
  """Indices whose result is still interim after the update."""

  finalized: list[int] = field(default_factory=list)
  """Indices that became final with this update."""

  @property
  def changed(self) -> bool:
    return bool(self.updated or self.finalized)


class ResultsAccumulator:
  """
  Owns the ordered ``results`` of a session.

  A message is applied atomically: if any of its entries would overwrite a final result, or
  its changepoint lies beyond the end of the transcript, nothing is applied and a
  ``ProtocolError`` is raised.
  """

  def __init__(self) -> None:
    self._results: list[RecognitionResult] = []
    self._speaker_labels: list[SpeakerLabel] = []

  def __len__(self) -> int:
    return len(self._results)

  def __getitem__(self, index: int) -> RecognitionResult:
    return self._results[index]

  def reset(self) -> None:
    self._results.clear()
    self._speaker_labels.clear()

  def add(self, message: ResultsMessage) -> ReconcileOutcome:
    """
    Reconcile a results message into the transcript.

    :param message: The results message received from the service.
    :returns: Which positions changed and which of them became final.
    :raises FinalizedResultError: If the message rewrites a final position.
    :raises ProtocolError: If the changepoint leaves a gap in the transcript.
    """
    start = message.result_index
    if start > len(self._results):
      raise ProtocolError(
        f"result_index {start} skips past the end of the transcript ({len(self._results)})"
      )

    for offset in range(len(message.results)):
      index = start + offset
      if index < len(self._results) and self._results[index].is_final:
        raise FinalizedResultError(index)

    outcome = ReconcileOutcome()
    for offset, result in enumerate(message.results):
      index = start + offset
      if index < len(self._results):
        self._results[index] = result
      else:
        self._results.append(result)
      (outcome.finalized if result.is_final else outcome.updated).append(index)

    if message.speaker_labels:
      self._speaker_labels.extend(message.speaker_labels)

    return outcome

  def snapshot(self) -> SpeechRecognitionResults:
    """Return an immutable view of the transcript."""
    return SpeechRecognitionResults(
      results=tuple(self._results),
      speaker_labels=tuple(self._speaker_labels),
    )
