"""Fixed-size bit set stored as 64-bit words."""

from __future__ import annotations

_WORD = 64
_MASK = (1 << _WORD) - 1


class Bitset:
    """A fixed-size set of bit positions, used to record linearized operations."""

    __slots__ = ("_words",)

    def __init__(self, bits: int) -> None:
        if bits < 0:
            raise ValueError("bit count must be non-negative")
        self._words = [0] * ((bits + _WORD - 1) // _WORD)

    def _locate(self, pos: int) -> tuple[int, int]:
        if pos < 0:
            raise IndexError(f"bit position {pos} out of range")
        major, minor = divmod(pos, _WORD)
        if major >= len(self._words):
            raise IndexError(f"bit position {pos} out of range")
        return major, minor

    def clone(self) -> Bitset:
        """Return an independent copy."""
        copy = Bitset(0)
        copy._words = list(self._words)
        return copy

    def set(self, pos: int) -> Bitset:
        """Set the bit at ``pos`` and return this bitset."""
        major, minor = self._locate(pos)
        self._words[major] |= 1 << minor
        return self

    def clear(self, pos: int) -> Bitset:
        """Clear the bit at ``pos`` and return this bitset."""
        major, minor = self._locate(pos)
        self._words[major] &= ~(1 << minor) & _MASK
        return self

    def get(self, pos: int) -> bool:
        """Return whether the bit at ``pos`` is set."""
        major, minor = self._locate(pos)
        return bool(self._words[major] & (1 << minor))

    def popcount(self) -> int:
        """Number of bits set."""
        return sum(word.bit_count() for word in self._words)

    def digest(self) -> int:
        """A cheap 64-bit hash: the population count xor-ed with every word."""
        value = self.popcount()
        for word in self._words:
            value ^= word
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitset):
            return NotImplemented
        return self._words == other._words

    def __hash__(self) -> int:
        return self.digest()

    def __repr__(self) -> str:
        bits = [
            index * _WORD + minor
            for index, word in enumerate(self._words)
            for minor in range(_WORD)
            if word >> minor & 1
        ]
        return f"Bitset({bits})"