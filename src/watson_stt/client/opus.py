"""
Ogg Opus encoding for compressed microphone streaming.

PCM is encoded into 20 ms Opus packets with ``opuslib`` and wrapped in Ogg pages, which is
what the service expects for ``audio/ogg;codecs=opus``. Each call to ``encode`` returns
whole pages, so every chunk sent can be appended to the stream as it is.
"""

import secrets
import struct

import opuslib

OPUS_GRANULE_RATE = 48000
FRAME_DURATION_MS = 20
MAX_SEGMENTS_PER_PAGE = 255
VENDOR = b"watson-stt-stream"

# Ogg page header flags
BEGINNING_OF_STREAM = 0x02
END_OF_STREAM = 0x04

_PAGE_HEADER = struct.Struct("<4sBBqIIIB")
_CRC_OFFSET = 22


def _crc_table() -> list[int]:
  table = []
  for index in range(256):
    remainder = index << 24
    for _ in range(8):
      if remainder & 0x80000000:
        remainder = (remainder << 1) ^ 0x04C11DB7
      else:
        remainder <<= 1
    table.append(remainder & 0xFFFFFFFF)
  return table


_CRC_TABLE = _crc_table()


def ogg_crc(data: bytes) -> int:
  """CRC-32 as used by Ogg pages: polynomial 0x04C11DB7, zero initial value, no reflection."""
  crc = 0
  for byte in data:
    crc = ((crc << 8) & 0xFFFFFFFF) ^ _CRC_TABLE[((crc >> 24) & 0xFF) ^ byte]
  return crc


class OggOpusEncoder:
  """
  Encodes 16-bit little-endian PCM into an Ogg Opus stream.

  Not thread safe. Feed it from one thread at a time.
  """

  def __init__(
    self,
    sample_rate: int = 16000,
    channels: int = 1,
    application: int = opuslib.APPLICATION_VOIP,
    serial: int | None = None,
  ):
    """
    :param sample_rate: PCM sample rate. Must be one Opus supports (8, 12, 16, 24 or 48 kHz).
    :param channels: Interleaved PCM channels.
    :param application: Opus application mode.
    :param serial: Ogg stream serial number; random when omitted.
    """
    if OPUS_GRANULE_RATE % sample_rate:
      raise ValueError(f"Opus cannot encode {sample_rate} Hz audio without resampling")

    self.sample_rate = sample_rate
    self.channels = channels
    self.serial = secrets.randbits(32) if serial is None else serial
    self.frame_size = sample_rate * FRAME_DURATION_MS // 1000
    self.frame_bytes = self.frame_size * channels * 2
    self._granule_per_sample = OPUS_GRANULE_RATE // sample_rate

    self._encoder = opuslib.Encoder(sample_rate, channels, application)
    self._pcm = bytearray()
    self._granule = 0
    self._sequence = 0
    self._finished = False

  def header(self) -> bytes:
    """The identification and comment header pages that must start the stream."""
    identification = b"OpusHead" + struct.pack(
      "<BBHIhB", 1, self.channels, 0, self.sample_rate, 0, 0
    )
    comments = b"OpusTags" + struct.pack("<I", len(VENDOR)) + VENDOR + struct.pack("<I", 0)
    return self._page([identification], 0, BEGINNING_OF_STREAM) + self._page([comments], 0)

  def encode(self, pcm: bytes) -> bytes:
    """
    Encode as many complete frames as the buffered PCM allows.

    :returns: Zero or more Ogg pages. Leftover PCM is kept for the next call.
    """
    if self._finished:
      raise RuntimeError("Stream already finished")

    self._pcm.extend(pcm)
    packets = []
    while len(self._pcm) >= self.frame_bytes:
      packet = self._encode_frame(bytes(self._pcm[: self.frame_bytes]))
      del self._pcm[: self.frame_bytes]
      self._granule += self.frame_size * self._granule_per_sample
      packets.append((packet, self._granule))
    return self._pages(packets)

  def finish(self) -> bytes:
    """Encode the buffered remainder, padded with silence, as the last page of the stream."""
    if self._finished:
      return b""
    self._finished = True

    remaining_samples = len(self._pcm) // (self.channels * 2)
    self._granule += remaining_samples * self._granule_per_sample
    frame = bytes(self._pcm) + bytes(self.frame_bytes - len(self._pcm))
    self._pcm.clear()
    return self._pages([(self._encode_frame(frame), self._granule)], END_OF_STREAM)

  def _encode_frame(self, frame: bytes) -> bytes:
    return self._encoder.encode(frame, self.frame_size)

  def _pages(self, packets: list[tuple[bytes, int]], last_flags: int = 0) -> bytes:
    """
    Pack ``(packet, granule)`` pairs into as few pages as the segment table allows.

    A page's granule position is the one after its last packet.
    """
    pages = bytearray()
    page: list[bytes] = []
    granule = 0
    segments = 0
    for packet, packet_granule in packets:
      needed = len(packet) // 255 + 1
      if page and segments + needed > MAX_SEGMENTS_PER_PAGE:
        pages += self._page(page, granule)
        page, segments = [], 0
      page.append(packet)
      granule = packet_granule
      segments += needed

    if page:
      pages += self._page(page, granule, last_flags)
    return bytes(pages)

  def _page(self, packets: list[bytes], granule: int, flags: int = 0) -> bytes:
    lacing = bytearray()
    for packet in packets:
      lacing.extend([255] * (len(packet) // 255))
      lacing.append(len(packet) % 255)

    header = _PAGE_HEADER.pack(
      b"OggS", 0, flags, granule, self.serial, self._sequence, 0, len(lacing)
    )
    page = bytearray(header + lacing + b"".join(packets))
    struct.pack_into("<I", page, _CRC_OFFSET, ogg_crc(page))
    self._sequence += 1
    return bytes(page)
