"""Basic tests for watson-stt-stream."""

import watson_stt
import watson_stt.client


def test_import():
  """Test that the module can be imported."""
  assert watson_stt is not None
  assert watson_stt.client.SpeechToTextClient is not None


def test_version():
  """Test that version is defined."""
  assert hasattr(watson_stt, "__version__")
