"""Fibonacci-like value computation for submitted indexes.

The worker stores values of the recurrence::

    f(n) = 1                  for n < 2
    f(n) = f(n-1) + f(n-2)    otherwise

so ``f(0) = f(1) = 1``, ``f(2) = 2`` and ``f(10) = 89``.  Any index below 2,
negative ones included, yields 1.

The value is computed iteratively in O(n) time and O(1) extra space, so large
indexes cost time proportional to the index instead of exhausting the stack.

Example
-------
>>> fib(10)
89
>>> parse_index(" 007 ")
7
"""

from __future__ import annotations

import re
from typing import Any

from fib_worker.common.error_handler import IndexParseError

__all__ = ["fib", "parse_index"]

_INDEX_PATTERN = re.compile(r"\s*[+-]?[0-9]+\s*")


def fib(index: int) -> int:
    """Return ``f(index)``.

    Parameters
    ----------
    index: int
        Position in the sequence. Values below 2 return 1.

    Returns
    -------
    int
        The value of the recurrence at ``index``.
    """
    a, b = 1, 1
    for _ in range(index):
        a, b = b, a + b
    return a


def parse_index(payload: Any) -> int:
    """Parse a message payload as a base-10 integer index.

    Surrounding whitespace, a leading sign and leading zeros are accepted.

    Raises
    ------
    IndexParseError
        If ``payload`` is not text made of an optional sign and ASCII digits,
        or has more digits than the interpreter converts to ``int``.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("ascii")
        except UnicodeDecodeError:
            raise IndexParseError(payload) from None

    if not isinstance(payload, str) or not _INDEX_PATTERN.fullmatch(payload):
        raise IndexParseError(payload)

    try:
        return int(payload, 10)
    except ValueError:
        # 桁数がint変換の上限（sys.get_int_max_str_digits）を超えた
        raise IndexParseError(payload) from None
