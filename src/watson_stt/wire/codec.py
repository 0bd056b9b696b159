"""
Message codec for wire protocol serialization and deserialization.

Provides the public API for converting between wire protocol message objects and JSON
strings, hiding the implementation details of Pydantic serialization.
"""

import json
from typing import Annotated, Any, TypeAlias

from pydantic import BaseModel, Discriminator, Tag, ValidationError

from watson_stt.errors import ProtocolError

from .messages import ErrorMessage, ResultsMessage, StartMessage, StateMessage, StopMessage


def _server_message_kind(value: Any) -> str | None:
  """Classify a decoded server payload by its top-level key."""
  if not isinstance(value, dict):
    return None
  if "error" in value:
    return "error"
  if "state" in value:
    return "state"
  if "results" in value or "result_index" in value:
    return "results"
  return None


ServerMessage = Annotated[
  Annotated[ErrorMessage, Tag("error")]
  | Annotated[StateMessage, Tag("state")]
  | Annotated[ResultsMessage, Tag("results")],
  Discriminator(_server_message_kind),
]

ClientMessage: TypeAlias = StartMessage | StopMessage


class _MessageCodec(BaseModel):
  """Private wrapper type for deserializing the discriminated union of server messages."""

  message: ServerMessage


def serialize_message(message: ClientMessage) -> str:
  """
  Serialize a client control message to a JSON string.

  Args:
      message: A start or stop message.

  Returns:
      JSON string representation of the message.
  """
  if isinstance(message, StartMessage):
    return json.dumps(message.wire_payload())
  return message.model_dump_json()


def deserialize_message(json_str: str | bytes) -> ErrorMessage | StateMessage | ResultsMessage:
  """
  Deserialize a JSON string received from the service.

  Args:
      json_str: JSON text frame payload.

  Returns:
      The state, results or error message it encodes.

  Raises:
      ProtocolError: If the payload is not JSON or matches no known message shape.
  """
  try:
    payload = json.loads(json_str)
  except ValueError as e:
    raise ProtocolError(f"Message is not valid JSON: {e}") from e

  if _server_message_kind(payload) is None:
    keys = sorted(payload) if isinstance(payload, dict) else type(payload).__name__
    raise ProtocolError(f"Unrecognized message shape: {keys}")

  try:
    return _MessageCodec.model_validate({"message": payload}).message
  except ValidationError as e:
    raise ProtocolError(f"Malformed {_server_message_kind(payload)} message: {e}") from e
