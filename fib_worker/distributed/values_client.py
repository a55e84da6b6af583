#!/usr/bin/env python3
"""
値クライアント - インデックスの送信と計算結果の参照
"""

import logging
from typing import Dict, Optional, Union

from fib_worker.distributed.message_queue import MessageQueueInterface

logger = logging.getLogger(__name__)


class ValuesClient:
    """インデックス送信クライアント"""

    def __init__(self, mq: MessageQueueInterface, channel: str = 'insert',
                 hash_name: str = 'values'):
        self.mq = mq
        self.channel = channel
        self.hash_name = hash_name

    def submit(self, index: Union[int, str]) -> bool:
        """インデックスをチャンネルへ発行（結果の完了通知はない）"""
        payload = str(index)
        published = self.mq.publish(self.channel, payload)
        if published:
            logger.info(f"Submitted index {payload!r} on {self.channel}")
        else:
            logger.warning(f"Failed to submit index {payload!r} on {self.channel}")
        return published

    def current_values(self) -> Dict[str, str]:
        """計算済みの値をすべて取得"""
        return self.mq.hgetall(self.hash_name)

    def get_value(self, index_text: str) -> Optional[str]:
        return self.current_values().get(index_text)
