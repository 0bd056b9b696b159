"""
Audio file sources for streaming recognition.
"""

import asyncio
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

from watson_stt.wire import AudioFormat

_SUFFIX_CONTENT_TYPES = {
  ".flac": AudioFormat.FLAC.value,
  ".wav": AudioFormat.WAV.value,
  ".ogg": AudioFormat.OGG_OPUS.value,
  ".opus": AudioFormat.OGG_OPUS.value,
}


def content_type_for_path(path: str | Path) -> str:
  """Infer the content type of an audio file from its suffix."""
  suffix = Path(path).suffix.lower()
  try:
    return _SUFFIX_CONTENT_TYPES[suffix]
  except KeyError:
    raise ValueError(
      f"Cannot infer content type for '{suffix or path}', pass one explicitly"
    ) from None


async def read_file_chunks(path: str | Path, chunk_size: int = 8192) -> AsyncIterator[bytes]:
  """
  Yield an audio file's bytes in fixed-size chunks.

  The file is opened and read on worker threads so the event loop keeps running, and only
  one chunk is held at a time.
  """
  if chunk_size <= 0:
    raise ValueError("chunk_size must be positive")
  f = await asyncio.to_thread(open, path, "rb")
  try:
    while chunk := await asyncio.to_thread(f.read, chunk_size):
      yield chunk
  finally:
    f.close()


def iter_bytes_chunks(audio: bytes, chunk_size: int = 8192) -> Iterator[bytes]:
  if chunk_size <= 0:
    raise ValueError("chunk_size must be positive")
  for offset in range(0, len(audio), chunk_size):
    yield audio[offset : offset + chunk_size]


async def audio_chunks(audio: bytes | str | Path, chunk_size: int = 8192) -> AsyncIterator[bytes]:
  """Yield in-memory audio or the contents of an audio file in fixed-size chunks."""
  if isinstance(audio, bytes):
    for chunk in iter_bytes_chunks(audio, chunk_size):
      yield chunk
  else:
    async for chunk in read_file_chunks(audio, chunk_size):
      yield chunk
