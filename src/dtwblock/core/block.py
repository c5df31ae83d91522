"""
Block restriction of the comparison space and the index plan used to pack a block into a compact, flat array.
"""
from dataclasses import dataclass, astuple
from typing import Union, Optional, Iterable
from warnings import warn

import numpy as np

from dtwblock import CountWidthWarning
from dtwblock.core.settings import DTWSettings


# Constants ------------------------------------------------------------------------------------------------------------
_INT32_MAX = int(np.iinfo(np.int32).max)
_INT64_MAX = int(np.iinfo(np.int64).max)


# Exceptions -----------------------------------------------------------------------------------------------------------
class BlockError(ValueError): pass
class PlanAllocationError(MemoryError): pass


# Classes --------------------------------------------------------------------------------------------------------------
@dataclass(slots=True)
class Block:
    """
    A half-open region ``[row_begin, row_end) x [col_begin, col_end)`` of the ``N x N`` comparison space.

    An end of ``0`` means "up to N"; it is filled in by ``normalize``, which mutates the block in place so
    that callers see the effective region after a computation.

    Examples:
        >>> b = Block(1, 3)
        >>> b.normalize(4)
        Block(row_begin=1, row_end=3, col_begin=0, col_end=4)
    """
    row_begin: int = 0
    row_end: int = 0
    col_begin: int = 0
    col_end: int = 0

    def __post_init__(self):
        for name in self.__slots__:
            if (value := int(getattr(self, name))) < 0: raise BlockError(f'{name} must be non-negative, got {value}')
            setattr(self, name, value)

    def __iter__(self): return iter(astuple(self))

    @classmethod
    def from_value(cls, value: Union['Block', Iterable[int], None] = None) -> 'Block':
        """
        Coerces ``None``, a ``Block`` or a ``(row_begin, row_end, col_begin, col_end)`` sequence into a ``Block``.

        A ``Block`` is returned as-is, so in-place normalization stays visible to the caller.
        """
        if value is None: return cls()
        if isinstance(value, cls): return value
        if len(value := tuple(value)) != 4: raise BlockError(f'Expected 4 block bounds, got {len(value)}')
        return cls(*value)

    @property
    def row_span(self) -> int: return self.row_end - self.row_begin
    @property
    def col_span(self) -> int: return self.col_end - self.col_begin

    def normalize(self, n: int) -> 'Block':
        """Replaces unset (zero) ends with *n* in place and returns the block."""
        if self.row_end == 0: self.row_end = n
        if self.col_end == 0: self.col_end = n
        return self

    def normalized(self, n: int) -> 'Block':
        """Returns a normalized copy, leaving this block untouched."""
        return Block(self.row_begin, self.row_end or n, self.col_begin, self.col_end or n)

    def is_valid(self, n: Optional[int] = None) -> bool:
        """Checks for a non-empty span in both dimensions and, if *n* is given, that the ends lie within it."""
        if self.row_end <= self.row_begin or self.col_end <= self.col_begin: return False
        return n is None or (self.row_end <= n and self.col_end <= n)

    def is_full(self, n: int) -> bool:
        """Returns ``True`` if the normalized block covers the whole ``n x n`` space."""
        b = self.normalized(n)
        return b.row_begin == 0 and b.col_begin == 0 and b.row_end == n and b.col_end == n


@dataclass(frozen=True, slots=True)
class Plan:
    """
    Index plan for a normalized block.

    ``col_starts[i]`` and ``offsets[i]`` describe row ``block.row_begin + i``: the first column compared
    against that row and the position of its first result in the compact output. Together with ``rows`` and
    ``spans`` they form the per-row work records that the scheduler partitions into batches.
    """
    block: Block
    n: int
    length: int
    col_starts: np.ndarray
    offsets: np.ndarray

    def __len__(self): return len(self.col_starts)

    @property
    def rows(self) -> np.ndarray:
        return np.arange(self.block.row_begin, self.block.row_end, dtype=self.col_starts.dtype)

    @property
    def spans(self) -> np.ndarray:
        """Number of pairs evaluated for each row (zero for rows entirely right of ``col_end``)."""
        return np.maximum(self.block.col_end - self.col_starts, 0)


# Functions ------------------------------------------------------------------------------------------------------------
def distances_length(block: Union[Block, Iterable[int], None], n: int, wide_count: bool = False) -> int:
    """
    Number of pairs ``(r, c)`` inside the block with ``c > r``.

    Evaluates ``sum(max(0, col_end - max(col_begin, r + 1)) for r in rows)`` in closed form: rows left of
    ``col_begin`` all contribute the full column span, the remaining rows an arithmetic series. Unset ends are
    read as *n* without mutating the block.

    Args:
        block: The block (or bounds) to count.
        n: Number of series.
        wide_count: If ``True`` the count is meant for 64-bit indices, else 32-bit ones. A count that does not
            fit the narrow type is still returned exactly, with a ``CountWidthWarning``.

    Returns:
        The exact number of pairs (``0`` for an invalid block).

    Raises:
        OverflowError: If the count does not fit a 64-bit index.

    Examples:
        >>> distances_length(None, 4)
        6
        >>> distances_length((1, 3, 0, 4), 4)
        3
    """
    rb, re, cb, ce = Block.from_value(block).normalized(n)
    if re <= rb or ce <= cb: return 0
    # Rows strictly left of col_begin see the whole column span
    length = max(0, min(re, cb) - rb) * (ce - cb)
    # Rows at or right of col_begin see ce - r - 1 columns while that is positive
    lo, hi = max(rb, cb), min(re, ce - 1)
    if hi > lo: length += (hi - lo) * ((ce - 1 - lo) + (ce - hi)) // 2

    if length > _INT64_MAX: raise OverflowError(f'{length} pairs exceed the 64-bit index range')
    if not wide_count and length > _INT32_MAX:
        warn(f'{length} pairs overflow 32-bit counters; widening to 64 bits', CountWidthWarning)
    return length


def prepare(block: Union[Block, Iterable[int], None], n: int, settings: Optional[DTWSettings] = None) -> Plan:
    """
    Validates a block and builds its index plan.

    The block is normalized in place when a ``Block`` instance is passed.

    Args:
        block: The block to plan.
        n: Number of series.
        settings: Settings; only ``wide_count`` is read here.

    Returns:
        A ``Plan`` whose arrays are sized by the row span of the block.

    Raises:
        BlockError: If the block has an empty span or extends beyond *n*.
        PlanAllocationError: If the index arrays cannot be allocated.

    Examples:
        >>> plan = prepare(Block(1, 3, 0, 4), 4)
        >>> plan.col_starts, plan.offsets, plan.length
        (array([2, 3], dtype=int32), array([0, 2], dtype=int32), 3)
    """
    settings = DTWSettings.from_value(settings)
    block = Block.from_value(block).normalize(n)
    if not block.is_valid(): raise BlockError(f'Empty block: {block}')
    if not block.is_valid(n):
        raise BlockError(f'{block} exceeds the number of series ({n})')

    length = distances_length(block, n, settings.wide_count)
    dtype = settings.index_dtype
    if max(length, n) > _INT32_MAX: dtype = np.int64

    try:
        rows = np.arange(block.row_begin, block.row_end, dtype=dtype)
        col_starts = np.maximum(rows + 1, block.col_begin).astype(dtype, copy=False)
        offsets = np.zeros(block.row_span, dtype=dtype)
    except MemoryError as e:
        raise PlanAllocationError(f'Cannot allocate index arrays for {block.row_span} rows') from e

    # Running sum of the clamped row spans; rows starting past col_end contribute nothing
    spans = np.maximum(block.col_end - col_starts, 0)
    if len(spans) > 1: np.cumsum(spans[:-1], out=offsets[1:])
    return Plan(block, n, length, col_starts, offsets)


def pair_indices(block: Union[Block, Iterable[int], None], n: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Row and column indices of every pair in a block, in compact output order.

    Examples:
        >>> pair_indices(None, 3)
        (array([0, 0, 1]), array([1, 2, 2]))
    """
    plan = prepare(Block.from_value(block).normalized(n), n, DTWSettings(wide_count=True))
    spans = plan.spans
    rows = np.repeat(plan.rows, spans)
    cols = np.arange(plan.length, dtype=np.int64) - np.repeat(plan.offsets, spans) + np.repeat(plan.col_starts, spans)
    return rows, cols
