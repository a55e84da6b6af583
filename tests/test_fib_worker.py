#!/usr/bin/env python3
"""
Fibonacciワーカーのテスト
"""
import signal
import sys
import threading
import time
from unittest.mock import MagicMock

import pytest

from fib_worker.common.config import ConfigManager
from fib_worker.common.error_handler import BrokerConnectionError
from fib_worker.distributed.message_queue import LocalQueue, MessageQueueInterface, RedisQueue
from fib_worker.distributed.values_client import ValuesClient
from fib_worker.workers.fib_worker import STATUS_COMPUTING, STATUS_IDLE, FibWorker, main

INT_DIGIT_LIMIT = getattr(sys, 'get_int_max_str_digits', lambda: 0)()
# f(n) has about 0.209 * n digits
OVERSIZED_RESULT_INDEX = INT_DIGIT_LIMIT * 5 + 10

needs_int_digit_limit = pytest.mark.skipif(
    INT_DIGIT_LIMIT == 0, reason="interpreter has no int/str digit limit"
)


class RecordingEvent(threading.Event):
    """wait()の待ち時間を記録し、実際には待たないイベント"""

    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.is_set()


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestMessageHandling:
    """メッセージ処理"""

    @pytest.fixture
    def mq(self):
        mq = LocalQueue()
        mq.connect()
        return mq

    @pytest.fixture
    def worker(self, mq):
        return FibWorker(mq)

    def test_stores_value_under_raw_text(self, worker, mq):
        assert worker.deliver('insert', '10') == 89
        assert mq.hgetall('values') == {'10': '89'}
        assert worker.stats['values_stored'] == 1

    def test_distinct_text_creates_distinct_entries(self, worker, mq):
        worker.deliver('insert', '7')
        worker.deliver('insert', '007')

        assert mq.hgetall('values') == {'7': '21', '007': '21'}

    def test_repeated_submission_is_idempotent(self, worker, mq):
        worker.deliver('insert', '12')
        first = mq.hgetall('values')
        worker.deliver('insert', '12')

        assert mq.hgetall('values') == first == {'12': '233'}
        assert worker.stats['values_stored'] == 2

    def test_parse_error_is_skipped_and_processing_continues(self, worker, mq):
        assert worker.deliver('insert', 'banana') is None
        assert worker.deliver('insert', '5') == 8

        assert mq.hgetall('values') == {'5': '8'}
        assert worker.stats['parse_errors'] == 1
        stats = worker.errors.get_error_stats()
        assert stats['by_type'] == {'IndexParseError': 1}
        assert stats['recent_errors'][0]['context']['payload'] == 'banana'

    def test_index_above_ceiling_is_rejected(self, mq):
        worker = FibWorker(mq, max_index=100)

        assert worker.deliver('insert', '101') is None
        assert worker.deliver('insert', '100') == 573147844013817084101

        assert '101' not in mq.hgetall('values')
        assert worker.stats['rejected'] == 1

    def test_ceiling_can_be_disabled(self, mq):
        worker = FibWorker(mq, max_index=None)
        assert worker.deliver('insert', '12000') is not None

    def test_negative_index_stores_one(self, worker, mq):
        worker.deliver('insert', '-3')
        assert mq.hgetall('values') == {'-3': '1'}

    def test_other_channels_are_ignored(self, worker, mq):
        assert worker.deliver('other', '10') is None
        assert mq.hgetall('values') == {}
        assert worker.stats['messages_received'] == 0

    def test_write_failure_is_not_retried(self):
        mq = MagicMock(spec=MessageQueueInterface)
        mq.hset.return_value = False
        worker = FibWorker(mq)

        assert worker.deliver('insert', '6') == 13
        mq.hset.assert_called_once_with('values', '6', 13)
        assert worker.stats['write_failures'] == 1
        assert worker.stats['values_stored'] == 0

    def test_status_is_computing_only_during_computation(self):
        mq = MagicMock(spec=MessageQueueInterface)
        seen = []

        worker = FibWorker(mq)
        mq.hset.side_effect = lambda *args: seen.append(worker.status) or True
        original_compute = worker.compute

        def compute(payload):
            seen.append(worker.status)
            return original_compute(payload)

        worker.compute = compute
        worker.deliver('insert', '3')

        assert seen == [STATUS_COMPUTING, STATUS_IDLE]
        assert worker.status == STATUS_IDLE

    def test_oversized_payload_is_skipped_and_processing_continues(self, worker, mq):
        assert worker.deliver('insert', '1' * 5000) is None
        assert worker.deliver('insert', '5') == 8

        assert mq.hgetall('values') == {'5': '8'}
        assert worker.stats['parse_errors'] + worker.stats['rejected'] == 1
        assert worker.status == STATUS_IDLE

    @needs_int_digit_limit
    def test_unencodable_result_is_dropped_and_processing_continues(self, mq):
        worker = FibWorker(mq, max_index=None)

        assert worker.deliver('insert', str(OVERSIZED_RESULT_INDEX)) is not None
        assert worker.deliver('insert', '5') == 8

        assert mq.hgetall('values') == {'5': '8'}
        assert worker.stats['write_failures'] == 1
        assert worker.stats['values_stored'] == 1

    @pytest.mark.parametrize("error", [MemoryError(), RecursionError(), ValueError("too big")])
    def test_compute_failure_only_affects_that_message(self, worker, mq, error):
        original_compute = worker.compute
        worker.compute = MagicMock(side_effect=[error, original_compute('5')])

        assert worker.deliver('insert', '40') is None
        assert worker.deliver('insert', '5') == 8

        assert mq.hgetall('values') == {'5': '8'}
        assert worker.stats['compute_failures'] == 1
        assert worker.errors.get_error_stats()['by_type'] == {type(error).__name__: 1}
        assert worker.status == STATUS_IDLE


class TestWorkerLifecycle:
    """接続と再接続"""

    def test_reconnects_at_fixed_interval_after_connection_loss(self):
        mq = MagicMock(spec=MessageQueueInterface)
        mq.connect.side_effect = [True, False, False, True]
        mq.hset.return_value = True
        stop_event = RecordingEvent()

        def listen(channel, handler, event):
            if mq.listen.call_count == 1:
                raise BrokerConnectionError("connection reset")
            handler.deliver(channel, '10')
            event.set()

        mq.listen.side_effect = listen

        worker = FibWorker(mq, reconnect_interval=1.0)
        worker.run(stop_event)

        # 切断後の待機 + 接続失敗2回分の待機
        assert stop_event.waits == [1.0, 1.0, 1.0]
        assert mq.connect.call_count == 4
        assert mq.listen.call_count == 2
        mq.hset.assert_called_once_with('values', '10', 89)
        assert mq.disconnect.call_count == 2
        assert worker.stats['connection_errors'] == 1
        assert worker.stats['connect_attempts'] == 4
        assert worker.connected is False

    def test_stop_while_broker_unavailable(self):
        mq = MagicMock(spec=MessageQueueInterface)
        stop_event = RecordingEvent()

        def refuse():
            if mq.connect.call_count >= 3:
                stop_event.set()
            return False

        mq.connect.side_effect = refuse

        FibWorker(mq).run(stop_event)

        assert mq.connect.call_count == 3
        mq.listen.assert_not_called()
        mq.disconnect.assert_not_called()

    def test_end_to_end_with_local_queue(self):
        mq = LocalQueue()
        client = ValuesClient(mq)
        worker = FibWorker(mq)
        stop_event = threading.Event()

        thread = threading.Thread(target=worker.run, args=(stop_event,), daemon=True)
        thread.start()
        try:
            assert wait_until(lambda: mq.subscriber_count('insert') == 1)

            assert client.submit(10)
            assert client.submit('oops')
            assert client.submit('007')

            assert wait_until(lambda: len(client.current_values()) == 2)
            assert client.current_values() == {'10': '89', '007': '21'}
            assert client.get_value('10') == '89'
            assert client.get_value('oops') is None
        finally:
            stop_event.set()
            thread.join(timeout=5)

        assert not thread.is_alive()
        assert worker.stats['parse_errors'] == 1

    @needs_int_digit_limit
    def test_oversized_messages_do_not_stop_the_worker(self):
        mq = LocalQueue()
        client = ValuesClient(mq)
        worker = FibWorker(mq, max_index=None)
        stop_event = threading.Event()

        thread = threading.Thread(target=worker.run, args=(stop_event,), daemon=True)
        thread.start()
        try:
            assert wait_until(lambda: mq.subscriber_count('insert') == 1)

            client.submit('1' * (INT_DIGIT_LIMIT + 1))
            client.submit(OVERSIZED_RESULT_INDEX)
            client.submit('5')

            assert wait_until(lambda: client.current_values() == {'5': '8'}, timeout=30)
            assert thread.is_alive()
            assert worker.stats['parse_errors'] == 1
            assert worker.stats['write_failures'] == 1
        finally:
            stop_event.set()
            thread.join(timeout=5)

    def test_resubscribes_after_local_disconnect(self):
        mq = LocalQueue()
        client = ValuesClient(mq)
        worker = FibWorker(mq, reconnect_interval=0.05)
        stop_event = threading.Event()

        thread = threading.Thread(target=worker.run, args=(stop_event,), daemon=True)
        thread.start()
        try:
            assert wait_until(lambda: mq.subscriber_count('insert') == 1)
            mq.disconnect()
            assert wait_until(lambda: worker.stats['connection_errors'] == 1)
            assert wait_until(lambda: mq.subscriber_count('insert') == 1)

            client.submit('4')
            assert wait_until(lambda: client.current_values() == {'4': '5'})
        finally:
            stop_event.set()
            thread.join(timeout=5)

    def test_context_manager_releases_connection(self):
        mq = MagicMock(spec=MessageQueueInterface)
        with FibWorker(mq) as worker:
            worker.connected = True

        mq.disconnect.assert_called_once()
        assert worker.connected is False


class TestConfiguration:
    """設定からの構築"""

    def test_from_config_builds_redis_queue(self, tmp_path):
        config_file = tmp_path / 'worker.yaml'
        config_file.write_text(
            "redis:\n  host: redis.internal\n  port: 6380\n"
            "worker:\n  channel: jobs\n  hash_name: results\n"
            "  max_index: 50\n  reconnect_interval: 2\n",
            encoding='utf-8'
        )

        worker = FibWorker.from_config(ConfigManager(str(config_file)))

        assert isinstance(worker.mq, RedisQueue)
        assert worker.mq.host == 'redis.internal'
        assert worker.mq.port == 6380
        assert worker.channel == 'jobs'
        assert worker.hash_name == 'results'
        assert worker.max_index == 50
        assert worker.reconnect_interval == 2.0

    def test_main_runs_until_stopped(self, tmp_path, monkeypatch):
        monkeypatch.setattr(signal, 'signal', MagicMock())
        runs = []
        monkeypatch.setattr(FibWorker, 'run', lambda self: runs.append(self))

        exit_code = main([
            '--config', str(tmp_path / 'missing.yaml'),
            '--queue', 'local',
            '--channel', 'jobs',
        ])

        assert exit_code == 0
        assert isinstance(runs[0].mq, LocalQueue)
        assert runs[0].channel == 'jobs'
