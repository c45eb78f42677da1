from __future__ import annotations

from typing import Sequence, TypeVar

T = TypeVar("T")

_MASK = 0xFFFFFFFF
_SCALE = 4294967296.0
_MULTIPLIER = 1664525
_INCREMENT = 1013904223
_MIX_MULTIPLIER = 22695477


class DeterministicRNG:
    """32-bit linear congruential stream.

    Every draw advances ``state = (state * 1664525 + 1013904223) mod 2**32`` and
    returns ``state / 2**32``, so values land in ``[0, 1)``. Seed 0 is remapped
    to 1 to keep the stream away from the degenerate start.
    """

    __slots__ = ("_state",)

    def __init__(self, seed: int) -> None:
        state = int(seed) & _MASK
        self._state = state if state != 0 else 1

    @property
    def state(self) -> int:
        return self._state

    def random(self) -> float:
        self._state = (self._state * _MULTIPLIER + _INCREMENT) & _MASK
        return self._state / _SCALE

    __call__ = random

    def index(self, size: int) -> int:
        """Uniform index into a sequence of ``size`` items."""

        return min(size - 1, int(self.random() * size))

    def choice(self, items: Sequence[T]) -> T:
        return items[self.index(len(items))]

    def shuffle(self, items: Sequence[T]) -> list[T]:
        """Fisher-Yates over a copy of ``items``."""

        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = int(self.random() * (i + 1))
            result[i], result[j] = result[j], result[i]
        return result


def derive_seed(seed: int, salt: int) -> int:
    base = (seed * _MULTIPLIER + salt * _INCREMENT) & _MASK
    return (base * _MIX_MULTIPLIER + 1) & _MASK


def random_from_seed(seed: int, salt: int) -> float:
    """Stateless draw in ``[0, 1)`` for one (seed, salt) pair."""

    return derive_seed(seed, salt) / _SCALE


def shuffle_with_seed(items: Sequence[T], seed: int, salt: int) -> list[T]:
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = int(random_from_seed(seed, salt + i) * (i + 1))
        result[i], result[j] = result[j], result[i]
    return result


def create_rng(seed: int) -> DeterministicRNG:
    return DeterministicRNG(seed)


def voice_rng(seed: int, offset: int) -> DeterministicRNG:
    return DeterministicRNG((seed + offset) & _MASK)
