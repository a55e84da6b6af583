#!/usr/bin/env python3
"""
メッセージキューインターフェース - ワーカーとブローカー間の通信基盤
Pub/Sub and shared-hash access for the Fibonacci worker
"""

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Optional

import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

from fib_worker.common.error_handler import BrokerConnectionError

logger = logging.getLogger(__name__)


class MessageHandler(ABC):
    """購読メッセージの受け手"""

    @abstractmethod
    def deliver(self, channel: str, payload: str) -> Any:
        """メッセージを1件処理"""
        pass


class MessageQueueInterface(ABC):
    """メッセージキューの抽象インターフェース"""

    @abstractmethod
    def connect(self) -> bool:
        """接続を確立"""
        pass

    @abstractmethod
    def disconnect(self) -> bool:
        """接続を切断"""
        pass

    @abstractmethod
    def publish(self, channel: str, payload: str) -> bool:
        """メッセージを発行"""
        pass

    @abstractmethod
    def hset(self, name: str, field: str, value: Any) -> bool:
        """ハッシュのフィールドを書き込む（失敗してもリトライしない）"""
        pass

    @abstractmethod
    def hgetall(self, name: str) -> Dict[str, str]:
        """ハッシュ全体を取得"""
        pass

    @abstractmethod
    def listen(self, channel: str, handler: MessageHandler,
               stop_event: threading.Event) -> None:
        """
        チャンネルを購読し、stop_eventがセットされるまで1件ずつ配送する

        Raises:
            BrokerConnectionError: 接続が失われた場合
        """
        pass


class RedisQueue(MessageQueueInterface):
    """Redis実装"""

    def __init__(self, host: str = 'localhost', port: int = 6379, db: int = 0,
                 poll_timeout: float = 1.0, **kwargs):
        self.host = host
        self.port = port
        self.db = db
        self.poll_timeout = poll_timeout
        self.client_kwargs = kwargs
        self.redis_client = None

    def connect(self) -> bool:
        """Redis接続を確立"""
        try:
            self.redis_client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                decode_responses=True,
                # 書き込みはリトライしない（再接続はワーカー側で行う）
                retry=Retry(NoBackoff(), 0),
                **self.client_kwargs
            )
            self.redis_client.ping()
            logger.info(f"Connected to Redis at {self.host}:{self.port}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {self.host}:{self.port}: {e}")
            self._close_client()
            return False

    def disconnect(self) -> bool:
        """Redis接続を切断"""
        if self.redis_client is None:
            return True
        try:
            self.redis_client.close()
            logger.info("Disconnected from Redis")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to disconnect from Redis: {e}")
            return False
        finally:
            self.redis_client = None

    def _close_client(self):
        if self.redis_client is not None:
            try:
                self.redis_client.close()
            except redis.RedisError:
                logger.debug("Ignoring error while closing a failed connection", exc_info=True)
            self.redis_client = None

    @property
    def connected(self) -> bool:
        return self.redis_client is not None

    def publish(self, channel: str, payload: str) -> bool:
        """メッセージを発行"""
        if self.redis_client is None:
            logger.error(f"Cannot publish to {channel}: not connected")
            return False
        try:
            receivers = self.redis_client.publish(channel, payload)
            logger.debug(f"Published {payload!r} to {channel} ({receivers} receivers)")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to publish message: {e}")
            return False

    def hset(self, name: str, field: str, value: Any) -> bool:
        """ハッシュにフィールドを書き込む"""
        if self.redis_client is None:
            logger.error(f"Cannot write {name}[{field!r}]: not connected")
            return False
        try:
            self.redis_client.hset(name, field, value)
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to write {name}[{field!r}]: {e}")
            return False
        except ValueError as e:
            # 値のエンコード失敗（int→strの桁数上限など）
            logger.error(f"Failed to encode value for {name}[{field!r}]: {e}")
            return False

    def hgetall(self, name: str) -> Dict[str, str]:
        """ハッシュ全体を取得"""
        if self.redis_client is None:
            raise BrokerConnectionError(f"Cannot read {name}: not connected")
        try:
            return self.redis_client.hgetall(name)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise BrokerConnectionError(f"Lost connection while reading {name}: {e}") from e

    def listen(self, channel: str, handler: MessageHandler,
               stop_event: threading.Event) -> None:
        """チャンネルをリッスン"""
        if self.redis_client is None:
            raise BrokerConnectionError(f"Cannot subscribe to {channel}: not connected")

        pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(channel)
            logger.info(f"Subscribed to channel: {channel}")

            while not stop_event.is_set():
                message = pubsub.get_message(timeout=self.poll_timeout)
                if message is None or message.get('type') != 'message':
                    continue
                handler.deliver(message['channel'], message['data'])
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise BrokerConnectionError(f"Lost connection to Redis: {e}") from e
        finally:
            try:
                pubsub.close()
            except redis.RedisError:
                logger.debug("Ignoring error while closing pubsub", exc_info=True)


class LocalQueue(MessageQueueInterface):
    """インメモリ実装（開発・テスト用、同一プロセス内のみ）"""

    def __init__(self, poll_timeout: float = 0.1):
        self.poll_timeout = poll_timeout
        self.connected = False
        self._lock = threading.Lock()
        self._subscribers = defaultdict(list)
        self._hashes = defaultdict(dict)

    def connect(self) -> bool:
        """接続を確立（ダミー）"""
        self.connected = True
        logger.info("Connected to LocalQueue (in-memory)")
        return True

    def disconnect(self) -> bool:
        """接続を切断（ダミー）"""
        self.connected = False
        logger.info("Disconnected from LocalQueue")
        return True

    def publish(self, channel: str, payload: str) -> bool:
        """購読中の全リスナーへ配送"""
        if not self.connected:
            logger.error(f"Cannot publish to {channel}: not connected")
            return False
        with self._lock:
            inboxes = list(self._subscribers[channel])
        for inbox in inboxes:
            inbox.put((channel, payload))
        logger.debug(f"Published {payload!r} to {channel} ({len(inboxes)} receivers)")
        return True

    def hset(self, name: str, field: str, value: Any) -> bool:
        if not self.connected:
            logger.error(f"Cannot write {name}[{field!r}]: not connected")
            return False
        try:
            # Redisと同じく文字列として保存
            text = str(value)
        except ValueError as e:
            logger.error(f"Failed to encode value for {name}[{field!r}]: {e}")
            return False
        with self._lock:
            self._hashes[name][field] = text
        return True

    def hgetall(self, name: str) -> Dict[str, str]:
        if not self.connected:
            raise BrokerConnectionError(f"Cannot read {name}: not connected")
        with self._lock:
            return dict(self._hashes.get(name, {}))

    def subscriber_count(self, channel: str) -> int:
        """チャンネルの購読者数"""
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def listen(self, channel: str, handler: MessageHandler,
               stop_event: threading.Event) -> None:
        if not self.connected:
            raise BrokerConnectionError(f"Cannot subscribe to {channel}: not connected")

        inbox = queue.Queue()
        with self._lock:
            self._subscribers[channel].append(inbox)
        logger.info(f"Subscribed to channel: {channel}")

        try:
            while not stop_event.is_set():
                if not self.connected:
                    raise BrokerConnectionError("LocalQueue was disconnected")
                try:
                    message_channel, payload = inbox.get(timeout=self.poll_timeout)
                except queue.Empty:
                    continue
                handler.deliver(message_channel, payload)
        finally:
            with self._lock:
                self._subscribers[channel].remove(inbox)


def get_queue_instance(queue_type: str = 'redis', **params) -> MessageQueueInterface:
    """キューインスタンスを取得"""
    if queue_type == 'redis':
        return RedisQueue(**params)
    elif queue_type == 'local':
        return LocalQueue(**params)
    else:
        raise ValueError(f"Unknown queue type: {queue_type}")
