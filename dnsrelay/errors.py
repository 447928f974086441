"""Error classification helpers."""

from __future__ import annotations

import errno

_CLOSED_PIPE_TEXT = "write on closed pipe"


def is_epipe(err: BaseException | None) -> bool:
    """Return True if err, or any error it was raised from, is a broken pipe."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, BrokenPipeError):
            return True
        if isinstance(err, OSError) and err.errno == errno.EPIPE:
            return True
        if _CLOSED_PIPE_TEXT in str(err):
            return True
        err = err.__cause__ or err.__context__
    return False