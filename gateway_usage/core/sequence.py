"""
Sequence guards for superseded fetches.
"""


class SequenceGuard:
    """Monotonic epoch counter for one logical fetch stream.

    A caller captures a token before awaiting a fetch and only applies the
    result if no newer fetch started in the meantime. Cancellation is
    cooperative: a superseded response is dropped on arrival.
    """

    def __init__(self):
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def begin(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, token: int) -> bool:
        return token == self._current
