#!/usr/bin/env python3
"""
エラー定義とエラー履歴の管理
Error types and error bookkeeping for the Fibonacci worker
"""

import logging
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# 共通エラークラス
class WorkerError(Exception):
    """ワーカー関連エラー"""
    pass


class BrokerConnectionError(WorkerError):
    """ブローカー（Redis）との接続が失われた"""
    pass


class InvalidIndexError(WorkerError):
    """受信したインデックスを処理できない"""

    def __init__(self, payload: Any, message: str):
        super().__init__(message)
        self.payload = payload


class IndexParseError(InvalidIndexError):
    """インデックスが10進整数として解釈できない"""

    def __init__(self, payload: Any):
        super().__init__(payload, f"Cannot parse index from payload {payload!r}")


class IndexTooLargeError(InvalidIndexError):
    """インデックスが上限を超えている"""

    def __init__(self, payload: Any, index: int, max_index: int):
        super().__init__(
            payload,
            f"Index {index} exceeds the configured maximum of {max_index}"
        )
        self.index = index
        self.max_index = max_index


class ErrorHistory:
    """発生したエラーの履歴と統計"""

    def __init__(self, max_entries: int = 100):
        self.max_entries = max_entries
        self.error_history = []
        self.counts_by_type: Dict[str, int] = {}

    def record(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """エラーを記録"""
        error_type = type(error).__name__
        error_info = {
            'timestamp': datetime.now().isoformat(),
            'error_type': error_type,
            'error_message': str(error),
            'context': context or {},
        }
        if error.__traceback__ is not None:
            error_info['traceback'] = ''.join(traceback.format_exception(
                type(error), error, error.__traceback__
            ))

        self.error_history.append(error_info)
        # 古いものから捨てる
        if len(self.error_history) > self.max_entries:
            del self.error_history[:-self.max_entries]

        self.counts_by_type[error_type] = self.counts_by_type.get(error_type, 0) + 1

    def get_error_stats(self) -> Dict[str, Any]:
        """エラー統計を取得"""
        total = sum(self.counts_by_type.values())
        if not total:
            return {'total_errors': 0}

        return {
            'total_errors': total,
            'by_type': dict(self.counts_by_type),
            'recent_errors': self.error_history[-10:]  # 最新10件
        }

    def clear(self):
        self.error_history.clear()
        self.counts_by_type.clear()
