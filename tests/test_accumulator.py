"""Tests for incremental result reconciliation."""

import pytest

from watson_stt.client.accumulator import ResultsAccumulator
from watson_stt.errors import FinalizedResultError, ProtocolError
from watson_stt.wire import ResultsMessage, deserialize_message


def message(result_index: int, *results: tuple[str, bool]) -> ResultsMessage:
  return ResultsMessage.model_validate(
    {
      "result_index": result_index,
      "results": [
        {"final": final, "alternatives": [{"transcript": transcript}]}
        for transcript, final in results
      ],
    }
  )


def transcripts(accumulator: ResultsAccumulator) -> list[str]:
  return [result.best.transcript for result in accumulator.snapshot().results]


class TestReconciliation:
  """Merging result updates from a changepoint."""

  def test_appends_and_replaces_from_changepoint(self):
    """Test that entries at and after result_index replace or extend the transcript."""
    accumulator = ResultsAccumulator()

    outcome = accumulator.add(message(0, ("the", False)))
    assert outcome.updated == [0]
    assert outcome.finalized == []

    outcome = accumulator.add(message(0, ("the quick", True), ("brown", False)))
    assert outcome.finalized == [0]
    assert outcome.updated == [1]
    assert transcripts(accumulator) == ["the quick", "brown"]

    outcome = accumulator.add(message(1, ("brown fox", True)))
    assert outcome.finalized == [1]
    assert transcripts(accumulator) == ["the quick", "brown fox"]

  def test_append_at_end(self):
    """Test that result_index equal to the length appends."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("one", True)))
    accumulator.add(message(1, ("two", False)))

    assert transcripts(accumulator) == ["one", "two"]
    assert len(accumulator) == 2

  def test_empty_update_changes_nothing(self):
    """Test that a results message with no entries is accepted as a no-op."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("one", True)))

    outcome = accumulator.add(message(1))

    assert not outcome.changed
    assert transcripts(accumulator) == ["one"]

  def test_final_results_cannot_change(self):
    """Test that rewriting a final position is rejected."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("fixed", True)))

    with pytest.raises(FinalizedResultError) as exc_info:
      accumulator.add(message(0, ("changed", True)))

    assert exc_info.value.index == 0
    assert transcripts(accumulator) == ["fixed"]

  def test_rejected_update_is_atomic(self):
    """Test that a message touching a final position applies none of its entries."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("interim", False), ("fixed", True)))

    with pytest.raises(FinalizedResultError):
      accumulator.add(message(0, ("new interim", False), ("new fixed", True), ("extra", False)))

    assert transcripts(accumulator) == ["interim", "fixed"]

  def test_gap_is_rejected(self):
    """Test that a changepoint past the end of the transcript is a protocol error."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("one", False)))

    with pytest.raises(ProtocolError, match="skips past the end"):
      accumulator.add(message(2, ("three", False)))

    assert transcripts(accumulator) == ["one"]

  def test_snapshot_is_detached(self):
    """Test that snapshots do not change when later updates arrive."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("first", False)))
    snapshot = accumulator.snapshot()

    accumulator.add(message(0, ("second", False)))

    assert snapshot.results[0].best.transcript == "first"

  def test_reset(self):
    """Test that reset clears results and speaker labels."""
    accumulator = ResultsAccumulator()
    accumulator.add(message(0, ("one", True)))
    accumulator.reset()

    assert len(accumulator) == 0
    assert accumulator.snapshot().speaker_labels == ()


class TestSpeakerLabels:
  """Accumulating speaker labels alongside results."""

  def test_accumulates_results_and_speaker_labels(self):
    """Test a streamed sentence with diarization."""
    frames = [
      '{"results": [{"alternatives": [{"transcript": "the quick "}], "final": false}],'
      ' "result_index": 0}',
      '{"results": [{"alternatives": [{"confidence": 0.922, "transcript": "the quick brown fox"}],'
      ' "final": true}], "result_index": 0, "speaker_labels": ['
      '{"from": 0.68, "to": 1.19, "speaker": 2, "confidence": 0.418, "final": false},'
      ' {"from": 1.47, "to": 1.93, "speaker": 1, "confidence": 0.521, "final": false}]}',
      '{"results": [{"alternatives": [{"confidence": 0.873, "transcript": "jumps over the lazy dog"}],'
      ' "final": true}], "result_index": 1, "speaker_labels": ['
      '{"from": 1.96, "to": 2.59, "speaker": 2, "confidence": 0.418, "final": false}]}',
    ]

    accumulator = ResultsAccumulator()
    for frame in frames:
      accumulator.add(deserialize_message(frame))

    snapshot = accumulator.snapshot()
    assert len(snapshot.results) == 2
    assert len(snapshot.speaker_labels) == 3
    assert snapshot.speaker_labels[0].start == 0.68
    assert snapshot.speaker_labels[0].speaker == 2
    assert snapshot.best_transcript == "the quick brown fox jumps over the lazy dog"
    assert len(snapshot.final_results) == 2
