"""Tests for the command line entry point."""

import asyncio
import io
import sys
import threading

import pytest

from watson_stt.client.__main__ import build_parser, main, settings_from_args, wait_for_enter


class TestArguments:
  def test_file_command(self):
    """Test that recognition options map onto settings."""
    args = build_parser().parse_args(
      [
        "--interim",
        "--max-alternatives",
        "3",
        "--keywords",
        "colorado, tornado",
        "--keywords-threshold",
        "0.5",
        "--timestamps",
        "file",
        "speech.flac",
      ]
    )

    settings = settings_from_args(args)

    assert args.command == "file"
    assert str(args.path) == "speech.flac"
    assert settings.interim_results is True
    assert settings.max_alternatives == 3
    assert settings.keywords == ["colorado", "tornado"]
    assert settings.keywords_threshold == 0.5
    assert settings.timestamps is True
    assert settings.content_type is None

  def test_unset_flags_are_left_to_the_service(self):
    args = build_parser().parse_args(["mic"])

    assert settings_from_args(args).wire_fields() == {}

  def test_compress_flag(self):
    assert build_parser().parse_args(["mic", "--compress"]).compress
    assert not build_parser().parse_args(["mic"]).compress

  def test_command_required(self):
    with pytest.raises(SystemExit):
      build_parser().parse_args([])


class TestMain:
  def test_missing_config_file(self, capsys):
    """Test that configuration problems exit with status 2."""
    assert main(["--config", "/nonexistent/config.yaml", "file", "speech.flac"]) == 2
    assert "Invalid configuration" in capsys.readouterr().err

  def test_missing_credentials(self, monkeypatch, capsys):
    names = ("WATSON_STT_APIKEY", "WATSON_STT_USERNAME", "WATSON_STT_PASSWORD", "WATSON_STT_TOKEN")
    for name in names:
      monkeypatch.delenv(name, raising=False)

    assert main(["mic"]) == 2
    assert "No credentials configured" in capsys.readouterr().err


class TestWaitForEnter:
  """Reading the stop signal for microphone runs."""

  @pytest.mark.asyncio
  async def test_resolves_after_a_line(self, monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.StringIO("\n"))

    await asyncio.wait_for(wait_for_enter(), timeout=2)

  @pytest.mark.asyncio
  async def test_reader_thread_does_not_hold_up_exit(self, monkeypatch):
    """Test that stdin is read on a daemon thread, so an interrupted run can exit."""
    release = threading.Event()

    class BlockingStdin:
      def readline(self):
        release.wait(timeout=5)
        return "\n"

    monkeypatch.setattr(sys, "stdin", BlockingStdin())
    entered = wait_for_enter()
    await asyncio.sleep(0)

    readers = [thread for thread in threading.enumerate() if thread.name == "stdin-reader"]
    assert readers
    assert all(thread.daemon for thread in readers)
    assert not entered.done()

    release.set()
    await asyncio.wait_for(entered, timeout=2)
