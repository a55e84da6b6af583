"""
分散通信モジュール
"""

from .message_queue import (
    LocalQueue,
    MessageHandler,
    MessageQueueInterface,
    RedisQueue,
    get_queue_instance,
)
from .values_client import ValuesClient

__all__ = [
    'LocalQueue',
    'MessageHandler',
    'MessageQueueInterface',
    'RedisQueue',
    'ValuesClient',
    'get_queue_instance',
]
