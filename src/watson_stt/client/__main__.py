#!/usr/bin/env python3
"""
Command line entry point for Watson Speech to Text streaming recognition.
"""

import argparse
import asyncio
import sys
import threading
from pathlib import Path

from pydantic import ValidationError

from watson_stt.client.config import ServiceConfig, load_config_from_file
from watson_stt.client.core import SpeechToTextClient
from watson_stt.client.session import SessionOutcome
from watson_stt.common import get_logger, setup_logging_from_env
from watson_stt.errors import SpeechToTextError
from watson_stt.wire import RecognitionResult, RecognitionSettings, SpeechRecognitionResults

logger = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog="watson-stt", description="Streaming transcription with Watson Speech to Text"
  )
  parser.add_argument("--config", type=Path, help="YAML service configuration file")
  parser.add_argument("--model", help="Language model, e.g. en-US_BroadbandModel")
  parser.add_argument("--content-type", help="Audio content type (inferred for files)")
  parser.add_argument("--interim", action="store_true", help="Show interim results")
  parser.add_argument("--max-alternatives", type=int, help="Alternatives per result")
  parser.add_argument("--keywords", help="Comma separated keywords to spot")
  parser.add_argument("--keywords-threshold", type=float, help="Keyword confidence threshold")
  parser.add_argument("--timestamps", action="store_true", help="Request word timestamps")
  parser.add_argument("--json", action="store_true", help="Print all results as JSON at the end")

  subparsers = parser.add_subparsers(dest="command", required=True)
  file_parser = subparsers.add_parser("file", help="Transcribe an audio file")
  file_parser.add_argument("path", type=Path, help="Audio file to transcribe")
  mic_parser = subparsers.add_parser("mic", help="Transcribe the microphone until Enter or Ctrl+C")
  mic_parser.add_argument("--compress", action="store_true", help="Send Ogg Opus audio")
  return parser


def settings_from_args(args: argparse.Namespace) -> RecognitionSettings:
  keywords = None
  if args.keywords:
    keywords = [keyword.strip() for keyword in args.keywords.split(",")]

  return RecognitionSettings(
    content_type=args.content_type,
    interim_results=args.interim or None,
    max_alternatives=args.max_alternatives,
    keywords=keywords,
    keywords_threshold=args.keywords_threshold,
    timestamps=args.timestamps or None,
  )


def load_service_config(config_path: Path | None) -> ServiceConfig:
  if config_path is not None:
    return load_config_from_file(config_path)
  return ServiceConfig.from_env()


def _print_final(result: RecognitionResult) -> None:
  print(result.best.transcript.strip(), flush=True)


def _print_interim(results: SpeechRecognitionResults) -> None:
  if results.results and not results.results[-1].is_final:
    print(f"... {results.results[-1].best.transcript.strip()}", file=sys.stderr, flush=True)


def _print_error(error: SpeechToTextError) -> None:
  print(f"[ERROR]: {error}", file=sys.stderr, flush=True)


async def _run_file(client: SpeechToTextClient, path: Path, settings, args) -> SessionOutcome:
  return await client.recognize(
    path,
    settings,
    on_final=_print_final,
    on_error=_print_error,
    on_interim=_print_interim if args.interim else None,
    model=args.model,
  )


def wait_for_enter() -> asyncio.Future[None]:
  """
  Resolve once a line is read from stdin.

  The read runs on a daemon thread, so an interrupted run can exit without waiting for it.
  """
  loop = asyncio.get_running_loop()
  entered: asyncio.Future[None] = loop.create_future()

  def mark_entered() -> None:
    if not entered.done():
      entered.set_result(None)

  def read_line() -> None:
    sys.stdin.readline()
    if not loop.is_closed():
      loop.call_soon_threadsafe(mark_entered)

  reader = threading.Thread(target=read_line, name="stdin-reader")
  reader.daemon = True
  reader.start()
  return entered


async def _run_microphone(client: SpeechToTextClient, settings, args) -> SessionOutcome:
  recognition = await client.recognize_microphone(
    settings,
    on_final=_print_final,
    on_error=_print_error,
    on_interim=_print_interim if args.interim else None,
    model=args.model,
    compress=args.compress,
  )
  print("[Listening. Press Enter to stop.]", file=sys.stderr, flush=True)
  outcome = asyncio.ensure_future(recognition.wait())
  try:
    await asyncio.wait([wait_for_enter(), outcome], return_when=asyncio.FIRST_COMPLETED)
  except asyncio.CancelledError:
    recognition.abort()
    raise
  recognition.stop()
  return await outcome


def main(argv: list[str] | None = None) -> int:
  args = build_parser().parse_args(argv)
  setup_logging_from_env()

  try:
    config = load_service_config(args.config)
    settings = settings_from_args(args)
  except (ValueError, ValidationError) as e:
    print(f"[ERROR]: Invalid configuration: {e}", file=sys.stderr)
    return 2

  client = SpeechToTextClient(config)
  try:
    if args.command == "file":
      outcome = asyncio.run(_run_file(client, args.path, settings, args))
    else:
      outcome = asyncio.run(_run_microphone(client, settings, args))
  except ValueError as e:
    print(f"[ERROR]: {e}", file=sys.stderr)
    return 2
  except OSError as e:
    print(f"[ERROR]: {e}", file=sys.stderr)
    return 1
  except KeyboardInterrupt:
    return 130

  if args.json:
    print(outcome.results.model_dump_json(by_alias=True, exclude_none=True, indent=2))
  logger.debug("Recognition finished", results=len(outcome.results.results), ok=outcome.ok)
  return 0 if outcome.ok else 1


if __name__ == "__main__":
  sys.exit(main())
