#!/usr/bin/env python3
"""
Fibonacciワーカー - チャンネルで受け取ったインデックスの値を計算してハッシュに保存
Computes values for indexes published on a channel, outside the request path
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Dict, Optional

from fib_worker.common.config import ConfigManager, setup_logging
from fib_worker.common.error_handler import (
    BrokerConnectionError,
    ErrorHistory,
    IndexParseError,
    IndexTooLargeError,
    InvalidIndexError,
)
from fib_worker.distributed.message_queue import (
    MessageHandler,
    MessageQueueInterface,
    get_queue_instance,
)
from fib_worker.fibonacci import fib, parse_index

logger = logging.getLogger(__name__)

STATUS_IDLE = 'idle'
STATUS_COMPUTING = 'computing'


def _preview(payload: Any, limit: int = 40) -> str:
    """ログ用にペイロードを短縮"""
    text = repr(payload)
    if len(text) > limit:
        return f"{text[:limit]}... ({len(text)} chars)"
    return text


class FibWorker(MessageHandler):
    """
    1チャンネルを購読し、受信したインデックスごとに値を1件書き込むワーカー

    Messages are handled one at a time on the dispatch loop. A payload that is
    not an integer, or whose index exceeds ``max_index``, is logged and
    skipped. Hash writes are fire-and-forget.
    """

    def __init__(self, mq: MessageQueueInterface, channel: str = 'insert',
                 hash_name: str = 'values', max_index: Optional[int] = 10000,
                 reconnect_interval: float = 1.0):
        self.mq = mq
        self.channel = channel
        self.hash_name = hash_name
        self.max_index = max_index
        self.reconnect_interval = reconnect_interval

        self.status = STATUS_IDLE
        self.connected = False
        self.errors = ErrorHistory()
        self._stop_event = threading.Event()

        self.stats = {
            'messages_received': 0,
            'values_stored': 0,
            'parse_errors': 0,
            'rejected': 0,
            'compute_failures': 0,
            'write_failures': 0,
            'connection_errors': 0,
            'connect_attempts': 0,
        }

    @classmethod
    def from_config(cls, config: ConfigManager) -> 'FibWorker':
        """設定からキューとワーカーを構築"""
        worker_config = config.get_worker_config()
        queue_type = worker_config.get('queue_type', 'redis')

        if queue_type == 'redis':
            mq = get_queue_instance('redis', **config.get_redis_config())
        else:
            mq = get_queue_instance(queue_type)

        return cls(
            mq,
            channel=worker_config.get('channel', 'insert'),
            hash_name=worker_config.get('hash_name', 'values'),
            max_index=worker_config.get('max_index', 10000),
            reconnect_interval=float(worker_config.get('reconnect_interval', 1.0)),
        )

    # --- メッセージ処理 ---

    def compute(self, payload: Any) -> int:
        """ペイロードを解釈して値を計算"""
        index = parse_index(payload)
        if self.max_index is not None and index > self.max_index:
            raise IndexTooLargeError(payload, index, self.max_index)
        return fib(index)

    def deliver(self, channel: str, payload: str) -> Optional[int]:
        """メッセージを1件処理し、保存した値を返す（スキップ時はNone）"""
        if channel != self.channel:
            logger.debug(f"Ignoring message on unexpected channel {channel!r}")
            return None

        self.stats['messages_received'] += 1
        self.status = STATUS_COMPUTING
        try:
            value = self.compute(payload)
        except InvalidIndexError as e:
            if isinstance(e, IndexParseError):
                self.stats['parse_errors'] += 1
            else:
                self.stats['rejected'] += 1
            self.errors.record(e, {'channel': channel, 'payload': payload})
            logger.warning(f"Skipping message {_preview(payload)}: {e}")
            return None
        except (ValueError, MemoryError, RecursionError) as e:
            # このメッセージだけを失敗扱いにし、プロセスは継続
            self.stats['compute_failures'] += 1
            self.errors.record(e, {'channel': channel, 'payload': payload})
            logger.error(f"Failed to compute value for {_preview(payload)}: {e}")
            return None
        finally:
            self.status = STATUS_IDLE

        # フィールドは受信したテキストそのもの
        if self.mq.hset(self.hash_name, payload, value):
            self.stats['values_stored'] += 1
            logger.info(f"Stored {self.hash_name}[{_preview(payload)}]")
        else:
            self.stats['write_failures'] += 1
            logger.warning(f"Dropped result for {_preview(payload)}: write to {self.hash_name} failed")
        return value

    # --- ライフサイクル ---

    def _connect(self) -> bool:
        """接続できるまで一定間隔で再試行（停止要求があればFalse）"""
        while not self._stop_event.is_set():
            self.stats['connect_attempts'] += 1
            if self.mq.connect():
                self.connected = True
                return True
            logger.warning(f"Broker unavailable, retrying in {self.reconnect_interval:.1f}s")
            self._stop_event.wait(self.reconnect_interval)
        return False

    def run(self, stop_event: Optional[threading.Event] = None):
        """メインループ"""
        if stop_event is not None:
            self._stop_event = stop_event
        logger.info(f"🚀 Fibonacci worker listening on {self.channel!r}, writing to {self.hash_name!r}")

        try:
            while not self._stop_event.is_set():
                if not self.connected and not self._connect():
                    break
                try:
                    self.mq.listen(self.channel, self, self._stop_event)
                except BrokerConnectionError as e:
                    self.stats['connection_errors'] += 1
                    self.errors.record(e, {'channel': self.channel})
                    logger.warning(f"{e}; reconnecting in {self.reconnect_interval:.1f}s")
                    self._release()
                    self._stop_event.wait(self.reconnect_interval)
        except KeyboardInterrupt:
            logger.info("Worker interrupted")
        finally:
            self._release()
            logger.info("Fibonacci worker stopped")

    def stop(self):
        """停止を要求"""
        self._stop_event.set()

    def _release(self):
        if self.connected:
            self.mq.disconnect()
            self.connected = False

    def close(self):
        self.stop()
        self._release()

    def __enter__(self) -> 'FibWorker':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def get_stats(self) -> Dict[str, Any]:
        """統計情報を取得"""
        return {
            'status': self.status,
            'connected': self.connected,
            **self.stats,
            'errors': self.errors.get_error_stats(),
        }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Compute Fibonacci values for indexes published on a channel'
    )
    parser.add_argument('--config', help='Path to the YAML configuration file')
    parser.add_argument('--host', help='Redis host')
    parser.add_argument('--port', type=int, help='Redis port')
    parser.add_argument('--channel', help='Channel to subscribe to')
    parser.add_argument('--queue', choices=['redis', 'local'], help='Message queue backend')
    parser.add_argument('--log-level', help='Logging level (DEBUG, INFO, ...)')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = ConfigManager(args.config)
    if args.host:
        config.update_runtime('redis.host', args.host)
    if args.port:
        config.update_runtime('redis.port', args.port)
    if args.channel:
        config.update_runtime('worker.channel', args.channel)
    if args.queue:
        config.update_runtime('worker.queue_type', args.queue)

    setup_logging(config, level=args.log_level)

    worker = FibWorker.from_config(config)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        worker.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    worker.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
