"""
共通モジュールパッケージ
"""

from .config import ConfigManager, setup_logging
from .error_handler import (
    BrokerConnectionError,
    ErrorHistory,
    IndexParseError,
    IndexTooLargeError,
    InvalidIndexError,
    WorkerError,
)

__all__ = [
    'ConfigManager',
    'setup_logging',
    'BrokerConnectionError',
    'ErrorHistory',
    'IndexParseError',
    'IndexTooLargeError',
    'InvalidIndexError',
    'WorkerError',
]
