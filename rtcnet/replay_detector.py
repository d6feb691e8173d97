"""Sliding-window detectors for replayed sequence numbers."""

from __future__ import annotations

from abc import ABC, abstractmethod


class _BitMask:
    """A fixed-width bit field; bits shifted past the width are dropped."""

    __slots__ = ("_size", "_value")

    def __init__(self, size: int) -> None:
        self._size = size
        self._value = 0

    def bit(self, index: int) -> int:
        if not 0 <= index < self._size:
            return 0
        return (self._value >> index) & 1

    def lsh(self, count: int) -> None:
        if count >= self._size:
            self._value = 0
        else:
            self._value = (self._value << count) & ((1 << self._size) - 1)

    def set_bit(self, index: int) -> None:
        if 0 <= index < self._size:
            self._value |= 1 << index


class ReplayDetector(ABC):
    """Detects sequence numbers that were already received."""

    @abstractmethod
    def check(self, seq: int) -> bool:
        """Return True if ``seq`` is not a replay; call accept() to record it."""

    @abstractmethod
    def accept(self) -> None:
        """Mark the sequence number of the last successful check as received."""


class SlidingWindowDetector(ReplayDetector):
    """Replay detector for monotonically increasing numbers without wrapping.

    Handles sequence numbers up to the full 64-bit range, which makes it
    suitable for DTLS replay protection.
    """

    def __init__(self, window_size: int, max_seq: int) -> None:
        self._accepted = False
        self._seq = 0
        self._latest_seq = 0
        self._max_seq = max_seq
        self._window_size = window_size
        self._mask = _BitMask(window_size)

    def check(self, seq: int) -> bool:
        self._accepted = False

        if seq > self._max_seq:
            return False

        if seq <= self._latest_seq:
            if self._latest_seq >= self._window_size + seq:
                return False
            if self._mask.bit(self._latest_seq - seq):
                return False

        self._accepted = True
        self._seq = seq
        return True

    def accept(self) -> None:
        if not self._accepted:
            return

        if self._seq > self._latest_seq:
            self._mask.lsh(self._seq - self._latest_seq)
            self._latest_seq = self._seq
        diff = self._latest_seq - self._seq
        if self._max_seq:
            diff %= self._max_seq
        self._mask.set_bit(diff)


class WrappedSlidingWindowDetector(ReplayDetector):
    """Replay detector that allows the sequence number to wrap around.

    Suitable for short counters such as those of SRTP and SRTCP.
    """

    def __init__(self, window_size: int, max_seq: int) -> None:
        self._accepted = False
        self._seq = 0
        self._latest_seq = 0
        self._max_seq = max_seq
        self._window_size = window_size
        self._mask = _BitMask(window_size)
        self._init = False

    def _wrapped_diff(self, seq: int) -> int:
        diff = self._latest_seq - seq
        half = self._max_seq // 2
        if diff > half:
            diff -= self._max_seq + 1
        elif diff <= -half:
            diff += self._max_seq + 1
        return diff

    def check(self, seq: int) -> bool:
        self._accepted = False

        if seq > self._max_seq:
            return False
        if not self._init:
            self._latest_seq = seq - 1 if seq != 0 else self._max_seq
            self._init = True

        diff = self._wrapped_diff(seq)
        if diff >= self._window_size:
            return False
        if diff >= 0 and self._mask.bit(diff):
            return False

        self._accepted = True
        self._seq = seq
        return True

    def accept(self) -> None:
        if not self._accepted:
            return

        diff = self._wrapped_diff(self._seq)
        if diff >= self._window_size:
            raise RuntimeError("accepted sequence number lies outside the window")

        if diff < 0:
            self._mask.lsh(-diff)
            self._latest_seq = self._seq
        # A negative index (sequence behind a wrap) falls outside the mask.
        self._mask.set_bit(self._latest_seq - self._seq)


class NoOpReplayDetector(ReplayDetector):
    """Detector that lets every sequence number through."""

    def check(self, seq: int) -> bool:
        return True

    def accept(self) -> None:
        return None