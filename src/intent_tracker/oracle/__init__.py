"""
Oracle access: HTTP client, JSON answer parsing and the prompt pipeline.
"""

from .client import (
    OracleClient,
    OracleConfig,
    OracleError,
    OracleResponseError,
    OracleSession,
    OracleUnavailableError,
)
from .json_utils import clean_json_response, parse_json_response
from .pipeline import OraclePipeline

__all__ = [
    "OracleClient",
    "OracleConfig",
    "OracleError",
    "OracleResponseError",
    "OracleSession",
    "OracleUnavailableError",
    "clean_json_response",
    "parse_json_response",
    "OraclePipeline",
]
