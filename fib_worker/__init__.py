"""
Fibonacci worker - computes values for submitted indexes off the request path
"""

from .fibonacci import fib, parse_index

__version__ = '1.0.0'

__all__ = ['fib', 'parse_index', '__version__']
