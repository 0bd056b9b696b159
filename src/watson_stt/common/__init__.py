"""
watson_stt common package.
"""

from watson_stt.common.logs import get_logger, setup_logging, setup_logging_from_env

__all__ = [
  "get_logger",
  "setup_logging",
  "setup_logging_from_env",
]
