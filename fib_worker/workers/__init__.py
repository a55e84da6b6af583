"""
ワーカーモジュール
"""

from .fib_worker import FibWorker

__all__ = ['FibWorker']
