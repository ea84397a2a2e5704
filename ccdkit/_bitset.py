"""
_bitset.py
==========
Fixed-width taxon bitmasks.

Every clade of a CCD is identified by the set of taxa below it, stored as a
bitmask over the taxon index space ``0..n-1``.  Clade bitmasks are used as
dictionary keys millions of times during construction and expansion, so the
common widths are specialised:

  BitSet64, BitSet128, BitSet192, BitSet256
      Backed by a single Python int truncated to the type's width.  Python
      ints make word-level AND/OR/XOR a single C-level operation.

  MultiWordBitSet
      Generic fallback for more than 256 taxa, backed by a numpy ``uint64``
      word array.

All implementations behave identically; operations are only defined between
bitmasks of the same type (and, for MultiWordBitSet, the same word count).

Public helpers
--------------
  new_bitset(n_bits)             smallest type able to hold n_bits taxa
  bitset_of(n_bits, indices)     bitmask with the given taxa set
  lexicographic_first(a, b)      deterministic tie-break between two masks

Bitmasks used as dictionary keys must not be mutated; copy first.
"""

from typing import Iterable, Iterator

import numpy as np


_WORD_BITS = 64
_WORD_MASK = (1 << _WORD_BITS) - 1


class BitSet:
    """
    Abstract taxon bitmask.

    The in-place operators (``or_``, ``and_``, ``and_not``, ``xor``) mutate
    ``self`` and return it so that calls can be chained on a fresh copy::

        partner = parent.copy().xor(child)
    """

    __slots__ = ()

    # ================================================================== #
    # Abstract primitives                                                  #
    # ================================================================== #

    def size(self) -> int:
        """Capacity in bits (a multiple of 64)."""
        raise NotImplementedError

    def to_int(self) -> int:
        """Return the bitmask as a non-negative Python int."""
        raise NotImplementedError

    def copy(self) -> "BitSet":
        raise NotImplementedError

    def set(self, index: int) -> None:
        raise NotImplementedError

    def clear(self, index: int = None) -> None:
        raise NotImplementedError

    def get(self, index: int) -> bool:
        raise NotImplementedError

    def or_(self, other: "BitSet") -> "BitSet":
        raise NotImplementedError

    def and_(self, other: "BitSet") -> "BitSet":
        raise NotImplementedError

    def and_not(self, other: "BitSet") -> "BitSet":
        raise NotImplementedError

    def xor(self, other: "BitSet") -> "BitSet":
        raise NotImplementedError

    def intersects(self, other: "BitSet") -> bool:
        raise NotImplementedError

    def contains(self, other: "BitSet") -> bool:
        """True if every bit of *other* is also set in ``self``."""
        raise NotImplementedError

    def cardinality(self) -> int:
        raise NotImplementedError

    def next_set_bit(self, from_index: int) -> int:
        raise NotImplementedError

    def next_clear_bit(self, from_index: int) -> int:
        raise NotImplementedError

    def last_set_bit(self) -> int:
        raise NotImplementedError

    # ================================================================== #
    # Shared behaviour                                                     #
    # ================================================================== #

    def set_range(self, from_index: int, to_index: int) -> None:
        """Set bits ``from_index`` (inclusive) to ``to_index`` (exclusive)."""
        for i in range(from_index, to_index):
            self.set(i)

    def disjoint(self, other: "BitSet") -> bool:
        return not self.intersects(other)

    def is_empty(self) -> bool:
        return self.next_set_bit(0) == -1

    def length(self) -> int:
        """Index of the highest set bit plus one (0 when empty)."""
        return self.last_set_bit() + 1

    def first_set_bit(self) -> int:
        return self.next_set_bit(0)

    def to_words(self, n_words: int = None) -> np.ndarray:
        """
        Return the bitmask as a little-endian ``uint64`` word array.

        Parameters
        ----------
        n_words : int, optional
            Number of words to emit; defaults to ``size() // 64``.
        """
        if n_words is None:
            n_words = self.size() // _WORD_BITS
        value = self.to_int()
        words = np.zeros(n_words, dtype=np.uint64)
        for w in range(n_words):
            words[w] = (value >> (_WORD_BITS * w)) & _WORD_MASK
        return words

    def __iter__(self) -> Iterator[int]:
        i = self.next_set_bit(0)
        while i != -1:
            yield i
            i = self.next_set_bit(i + 1)

    def __str__(self) -> str:
        return "{" + ", ".join(str(i) for i in self) + "}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self})"


# ======================================================================== #
# Single-int implementations (<= 256 taxa)                                 #
# ======================================================================== #


class _FixedWidthBitSet(BitSet):
    """Bitmask stored in one Python int, truncated to ``WIDTH`` bits."""

    __slots__ = ("_bits",)

    WIDTH = 0
    _MASK = 0

    def __init__(self, bits: int = 0) -> None:
        self._bits = bits & self._MASK

    def _check(self, other: BitSet) -> int:
        if type(other) is not type(self):
            raise ValueError(
                f"Bitmask width mismatch: {type(self).__name__} vs "
                f"{type(other).__name__}"
            )
        return other._bits

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= self.WIDTH:
            raise IndexError(
                f"Bit index {index} out of range for {type(self).__name__}"
            )

    def size(self) -> int:
        return self.WIDTH

    def to_int(self) -> int:
        return self._bits

    def copy(self) -> "_FixedWidthBitSet":
        return type(self)(self._bits)

    def set(self, index: int) -> None:
        self._check_index(index)
        self._bits |= 1 << index

    def set_range(self, from_index: int, to_index: int) -> None:
        if from_index >= to_index:
            return
        self._check_index(from_index)
        self._check_index(to_index - 1)
        self._bits |= ((1 << (to_index - from_index)) - 1) << from_index

    def clear(self, index: int = None) -> None:
        if index is None:
            self._bits = 0
            return
        self._check_index(index)
        self._bits &= ~(1 << index)

    def get(self, index: int) -> bool:
        if index < 0 or index >= self.WIDTH:
            return False
        return (self._bits >> index) & 1 == 1

    def or_(self, other: BitSet) -> "_FixedWidthBitSet":
        self._bits |= self._check(other)
        return self

    def and_(self, other: BitSet) -> "_FixedWidthBitSet":
        self._bits &= self._check(other)
        return self

    def and_not(self, other: BitSet) -> "_FixedWidthBitSet":
        self._bits &= ~self._check(other)
        return self

    def xor(self, other: BitSet) -> "_FixedWidthBitSet":
        self._bits ^= self._check(other)
        return self

    def intersects(self, other: BitSet) -> bool:
        return self._bits & self._check(other) != 0

    def contains(self, other: BitSet) -> bool:
        return self._check(other) & ~self._bits == 0

    def is_empty(self) -> bool:
        return self._bits == 0

    def cardinality(self) -> int:
        return self._bits.bit_count()

    def next_set_bit(self, from_index: int) -> int:
        if from_index < 0:
            raise IndexError(f"from_index < 0: {from_index}")
        rest = self._bits >> from_index
        if rest == 0:
            return -1
        return from_index + (rest & -rest).bit_length() - 1

    def next_clear_bit(self, from_index: int) -> int:
        if from_index < 0:
            raise IndexError(f"from_index < 0: {from_index}")
        # ~bits has infinitely many leading ones, so rest is never zero
        rest = ~self._bits >> from_index
        index = from_index + (rest & -rest).bit_length() - 1
        return index if index < self.WIDTH else -1

    def last_set_bit(self) -> int:
        return self._bits.bit_length() - 1

    def __eq__(self, other) -> bool:
        return type(other) is type(self) and other._bits == self._bits

    def __ne__(self, other) -> bool:
        return not self.__eq__(other)

    def __hash__(self) -> int:
        return hash(self._bits)


class BitSet64(_FixedWidthBitSet):
    __slots__ = ()
    WIDTH = 64
    _MASK = (1 << 64) - 1


class BitSet128(_FixedWidthBitSet):
    __slots__ = ()
    WIDTH = 128
    _MASK = (1 << 128) - 1


class BitSet192(_FixedWidthBitSet):
    __slots__ = ()
    WIDTH = 192
    _MASK = (1 << 192) - 1


class BitSet256(_FixedWidthBitSet):
    __slots__ = ()
    WIDTH = 256
    _MASK = (1 << 256) - 1


# ======================================================================== #
# Generic multi-word implementation                                        #
# ======================================================================== #


class MultiWordBitSet(BitSet):
    """
    Bitmask backed by a numpy ``uint64`` word array of arbitrary length.

    Parameters
    ----------
    n_bits : int
        Number of addressable bits; rounded up to whole words.
    words : array-like, optional
        Initial little-endian word values.
    """

    __slots__ = ("_words",)

    def __init__(self, n_bits: int, words=None) -> None:
        n_words = max(1, (n_bits + _WORD_BITS - 1) // _WORD_BITS)
        if words is None:
            self._words = np.zeros(n_words, dtype=np.uint64)
        else:
            self._words = np.array(words, dtype=np.uint64)
            if self._words.shape != (n_words,):
                raise ValueError(
                    f"Expected {n_words} words for {n_bits} bits, "
                    f"got {self._words.shape[0]}"
                )

    def _check(self, other: BitSet) -> np.ndarray:
        if type(other) is not MultiWordBitSet or (
            other._words.shape != self._words.shape
        ):
            raise ValueError(
                f"Bitmask width mismatch: {self.size()} bits vs {other.size()} bits"
            )
        return other._words

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= self.size():
            raise IndexError(f"Bit index {index} out of range for {self.size()} bits")

    def size(self) -> int:
        return self._words.shape[0] * _WORD_BITS

    def to_int(self) -> int:
        value = 0
        for w in range(self._words.shape[0] - 1, -1, -1):
            value = (value << _WORD_BITS) | int(self._words[w])
        return value

    def to_words(self, n_words: int = None) -> np.ndarray:
        if n_words is None or n_words == self._words.shape[0]:
            return self._words.copy()
        return super().to_words(n_words)

    def copy(self) -> "MultiWordBitSet":
        return MultiWordBitSet(self.size(), self._words)

    def set(self, index: int) -> None:
        self._check_index(index)
        self._words[index >> 6] |= np.uint64(1 << (index & 63))

    def clear(self, index: int = None) -> None:
        if index is None:
            self._words[:] = 0
            return
        self._check_index(index)
        self._words[index >> 6] &= np.uint64(_WORD_MASK ^ (1 << (index & 63)))

    def get(self, index: int) -> bool:
        if index < 0 or index >= self.size():
            return False
        return (int(self._words[index >> 6]) >> (index & 63)) & 1 == 1

    def or_(self, other: BitSet) -> "MultiWordBitSet":
        np.bitwise_or(self._words, self._check(other), out=self._words)
        return self

    def and_(self, other: BitSet) -> "MultiWordBitSet":
        np.bitwise_and(self._words, self._check(other), out=self._words)
        return self

    def and_not(self, other: BitSet) -> "MultiWordBitSet":
        np.bitwise_and(
            self._words, np.invert(self._check(other)), out=self._words
        )
        return self

    def xor(self, other: BitSet) -> "MultiWordBitSet":
        np.bitwise_xor(self._words, self._check(other), out=self._words)
        return self

    def intersects(self, other: BitSet) -> bool:
        return bool(np.any(np.bitwise_and(self._words, self._check(other))))

    def contains(self, other: BitSet) -> bool:
        other_words = self._check(other)
        return bool(
            np.all(np.bitwise_and(other_words, np.invert(self._words)) == 0)
        )

    def is_empty(self) -> bool:
        return not bool(np.any(self._words))

    def cardinality(self) -> int:
        return sum(int(w).bit_count() for w in self._words)

    def next_set_bit(self, from_index: int) -> int:
        if from_index < 0:
            raise IndexError(f"from_index < 0: {from_index}")
        n_words = self._words.shape[0]
        w = from_index >> 6
        if w >= n_words:
            return -1
        word = int(self._words[w]) & (_WORD_MASK << (from_index & 63)) & _WORD_MASK
        while True:
            if word != 0:
                return w * _WORD_BITS + (word & -word).bit_length() - 1
            w += 1
            if w == n_words:
                return -1
            word = int(self._words[w])

    def next_clear_bit(self, from_index: int) -> int:
        if from_index < 0:
            raise IndexError(f"from_index < 0: {from_index}")
        n_words = self._words.shape[0]
        w = from_index >> 6
        if w >= n_words:
            return -1
        word = (~int(self._words[w]) & _WORD_MASK) & (
            (_WORD_MASK << (from_index & 63)) & _WORD_MASK
        )
        while True:
            if word != 0:
                return w * _WORD_BITS + (word & -word).bit_length() - 1
            w += 1
            if w == n_words:
                return -1
            word = ~int(self._words[w]) & _WORD_MASK

    def last_set_bit(self) -> int:
        for w in range(self._words.shape[0] - 1, -1, -1):
            word = int(self._words[w])
            if word != 0:
                return w * _WORD_BITS + word.bit_length() - 1
        return -1

    def __eq__(self, other) -> bool:
        return (
            type(other) is MultiWordBitSet
            and other._words.shape == self._words.shape
            and bool(np.array_equal(other._words, self._words))
        )

    def __ne__(self, other) -> bool:
        return not self.__eq__(other)

    def __hash__(self) -> int:
        return hash(self._words.tobytes())


# ======================================================================== #
# Factory and helpers                                                      #
# ======================================================================== #


_FIXED_TYPES = (BitSet64, BitSet128, BitSet192, BitSet256)


def new_bitset(n_bits: int) -> BitSet:
    """
    Return an empty bitmask of the smallest type holding *n_bits* taxa.

    Examples
    --------
    >>> type(new_bitset(10)).__name__
    'BitSet64'
    >>> type(new_bitset(200)).__name__
    'BitSet256'
    >>> new_bitset(300).size()
    320
    """
    if n_bits < 0:
        raise ValueError(f"n_bits must be non-negative, got {n_bits}")
    for cls in _FIXED_TYPES:
        if n_bits <= cls.WIDTH:
            return cls()
    return MultiWordBitSet(n_bits)


def bitset_of(n_bits: int, indices: Iterable[int]) -> BitSet:
    """
    Return a bitmask over *n_bits* taxa with the given indices set.

    Examples
    --------
    >>> str(bitset_of(4, [0, 2]))
    '{0, 2}'
    """
    bits = new_bitset(n_bits)
    for i in indices:
        bits.set(int(i))
    return bits


def lexicographic_first(a: BitSet, b: BitSet) -> BitSet:
    """
    Deterministic tie-break between two bitmasks.

    Returns *a* when the two are equal.  Otherwise the bits unique to each
    side are compared and the side whose first unique bit has the smaller
    index wins.

    Examples
    --------
    >>> a = bitset_of(8, [0, 5])
    >>> b = bitset_of(8, [1, 2])
    >>> lexicographic_first(a, b) is a
    True
    >>> lexicographic_first(b, a) is a
    True
    """
    if a == b:
        return a
    only_in_a = a.copy().and_not(b).next_set_bit(0)
    only_in_b = b.copy().and_not(a).next_set_bit(0)
    return a if only_in_a < only_in_b else b
