"""
Microphone capture for streaming recognition.
"""

from collections.abc import Callable

import numpy as np
import sounddevice as sd

from watson_stt.wire import l16_content_type

# Capture format, sent as audio/l16
SAMPLE_RATE = 16000
CHANNELS = 1
DTYPE = np.int16
BLOCKSIZE = 4096

MICROPHONE_CONTENT_TYPE = l16_content_type(SAMPLE_RATE, CHANNELS)


class AudioCapture:
  """
  Captures microphone audio as 16-bit PCM and hands each block to ``on_audio``.

  ``on_audio`` runs on the sounddevice callback thread, so it must be thread safe
  (``StreamingTranscriptionSession.send_audio`` is).
  """

  def __init__(
    self,
    on_audio: Callable[[bytes], None],
    on_error: Callable[[str], None],
    audio_device: str | int | None = None,
  ):
    self.on_audio = on_audio
    self.on_error = on_error
    self.audio_device = audio_device
    self.audio_stream: sd.InputStream | None = None
    self.recording = False

  def audio_callback(self, indata: np.ndarray, frames: int, time_info, status):
    """Sounddevice audio callback."""
    if status:
      self.on_error(f"Audio status: {status}")

    if self.recording:
      self.on_audio(indata.astype(DTYPE, copy=False).tobytes())

  def start_recording(self):
    """Start audio capture from microphone."""
    if self.recording:
      return

    try:
      self.audio_stream = sd.InputStream(
        device=self.audio_device,
        channels=CHANNELS,
        samplerate=SAMPLE_RATE,
        dtype=DTYPE,
        latency="low",
        blocksize=BLOCKSIZE,
        callback=self.audio_callback,
      )
      self.recording = True
      self.audio_stream.start()
    except Exception as e:
      self.recording = False
      self.on_error(f"Error starting audio: {e}")
      raise

  def stop_recording(self):
    """Stop audio capture."""
    if not self.recording:
      return

    self.recording = False
    if self.audio_stream:
      try:
        self.audio_stream.stop()
        self.audio_stream.close()
      except Exception as e:
        self.on_error(f"Error stopping audio: {e}")
      finally:
        self.audio_stream = None
