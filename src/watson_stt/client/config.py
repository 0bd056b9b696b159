import os

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator, validate_call
from pydantic.types import FilePath

from watson_stt.client.auth import (
  DEFAULT_IAM_URL,
  BasicAuthTokenProvider,
  IAMTokenProvider,
  StaticTokenProvider,
  TokenProvider,
)
from watson_stt.common import get_logger

logger = get_logger("cfg")

DEFAULT_SERVICE_URL = "https://stream.watsonplatform.net/speech-to-text/api"
DEFAULT_TOKEN_URL = "https://stream.watsonplatform.net/authorization/api/v1/token"
DEFAULT_WEBSOCKETS_URL = "wss://stream.watsonplatform.net/speech-to-text/api/v1/recognize"

ENV_PREFIX = "WATSON_STT_"


class ServiceConfig(BaseModel):
  """Connection and credential settings for the Speech to Text service."""

  websockets_url: str = DEFAULT_WEBSOCKETS_URL
  """WebSocket recognition endpoint."""

  service_url: str = DEFAULT_SERVICE_URL
  """Service URL the legacy token service issues tokens for."""

  token_url: str = DEFAULT_TOKEN_URL
  """Legacy token service endpoint, used with username/password credentials."""

  iam_url: str = DEFAULT_IAM_URL
  """IAM token endpoint, used with an API key."""

  apikey: SecretStr | None = None
  username: str | None = None
  password: SecretStr | None = None

  token: SecretStr | None = None
  """Pre-issued token. Sessions cannot recover once it is rejected."""

  model: str | None = None
  """Language model, e.g. ``en-US_BroadbandModel``."""

  learning_opt_out: bool = False
  """Ask the service not to log requests for training."""

  customer_id: str | None = None
  """Customer ID associated with the data sent over each connection."""

  max_retries: int = Field(default=1, ge=0)
  """Reconnects allowed after an authentication failure."""

  chunk_size: int = Field(default=8192, gt=0)
  """Bytes per audio frame when streaming files."""

  max_pending_chunks: int = Field(default=32, gt=0)
  """Queued operations allowed before file streaming waits for the connection to catch up."""

  headers: dict[str, str] = Field(default_factory=dict)
  """Extra headers sent with every connection."""

  @model_validator(mode="after")
  def validate_credentials(self) -> "ServiceConfig":
    """Exactly one kind of credential must be configured."""
    kinds = [
      name
      for name, present in (
        ("apikey", self.apikey is not None),
        ("username/password", self.username is not None or self.password is not None),
        ("token", self.token is not None),
      )
      if present
    ]

    if not kinds:
      raise ValueError("No credentials configured. Provide an apikey, username/password or token.")
    if len(kinds) > 1:
      raise ValueError(f"Cannot combine credential kinds: {', '.join(kinds)}")
    if (self.username is None) != (self.password is None):
      raise ValueError("username and password must be provided together")
    return self

  def token_provider(self) -> TokenProvider:
    """Build the token provider matching the configured credentials."""
    if self.apikey is not None:
      return IAMTokenProvider(self.apikey.get_secret_value(), url=self.iam_url)
    if self.token is not None:
      return StaticTokenProvider(self.token.get_secret_value())
    assert self.username is not None and self.password is not None
    return BasicAuthTokenProvider(
      self.username,
      self.password.get_secret_value(),
      token_url=self.token_url,
      service_url=self.service_url,
    )

  @classmethod
  def from_env(cls, environ: dict[str, str] | None = None) -> "ServiceConfig":
    """Read ``WATSON_STT_*`` variables, e.g. ``WATSON_STT_APIKEY`` or ``WATSON_STT_MODEL``."""
    environ = dict(os.environ if environ is None else environ)
    values = {
      name.removeprefix(ENV_PREFIX).lower(): value
      for name, value in environ.items()
      if name.startswith(ENV_PREFIX) and value
    }
    return cls.model_validate(values)


@validate_call
def load_config_from_file(config_path: FilePath) -> ServiceConfig:
  """Load and validate the service configuration from a YAML file."""

  logger.info("Loading service configuration", path=str(config_path))

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)

  except yaml.YAMLError as e:
    raise ValueError(f"Invalid YAML in configuration file: {e}") from e
  except OSError as e:
    raise ValueError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    raise ValueError("Configuration file is empty")

  if not isinstance(config_data, dict):
    raise ValueError("Configuration file must contain a YAML dictionary")

  config = ServiceConfig.model_validate(config_data)
  logger.info(
    "Loaded service configuration",
    url=config.websockets_url,
    model=config.model,
    credentials=type(config.token_provider()).__name__,
  )
  return config
