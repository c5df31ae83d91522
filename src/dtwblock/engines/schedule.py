"""
Partitioning of plan rows into batches for the thread pool.

Rows of an upper-triangular block get cheaper as the row index grows, so the default ``GUIDED`` schedule hands
out large batches first and shrinks them in proportion to the remaining rows.
"""
from enum import IntEnum
from typing import Union, Generator, NamedTuple


# Classes --------------------------------------------------------------------------------------------------------------
class Schedule(IntEnum):
    """How plan rows are distributed over workers."""
    GUIDED = 0
    STATIC = 1
    DYNAMIC = 2

    @classmethod
    def from_value(cls, value: Union['Schedule', str, int]) -> 'Schedule':
        if isinstance(value, str):
            try: return cls[value.upper()]
            except KeyError: raise ValueError(f'Unknown schedule: {value}') from None
        return cls(value)


class RowBatch(NamedTuple):
    """Rows ``range(start, stop, step)`` (as offsets into the plan) processed by one task."""
    start: int
    stop: int
    step: int = 1

    @property
    def size(self) -> int: return len(range(self.start, self.stop, self.step))


# Functions ------------------------------------------------------------------------------------------------------------
def guided_batches(n_rows: int, n_workers: int, min_size: int = 1) -> Generator[RowBatch, None, None]:
    """
    Contiguous batches of ``ceil(remaining / n_workers)`` rows, never smaller than *min_size*.

    Examples:
        >>> [tuple(b) for b in guided_batches(10, 2)]
        [(0, 5, 1), (5, 8, 1), (8, 9, 1), (9, 10, 1)]
    """
    n_workers, min_size = max(1, n_workers), max(1, min_size)
    start = 0
    while start < n_rows:
        size = max(min_size, -(-(n_rows - start) // n_workers))
        stop = min(n_rows, start + size)
        yield RowBatch(start, stop)
        start = stop


def static_batches(n_rows: int, n_workers: int) -> Generator[RowBatch, None, None]:
    """
    One strided batch per worker: worker ``w`` takes rows ``w, w + n_workers, ...``.

    Neighbouring rows have nearly the same cost, so the cyclic assignment spreads the triangle evenly when every
    pair costs about the same.
    """
    for w in range(min(max(1, n_workers), n_rows)): yield RowBatch(w, n_rows, max(1, n_workers))


def dynamic_batches(n_rows: int) -> Generator[RowBatch, None, None]:
    """One row per task; the pool queue balances the load."""
    for i in range(n_rows): yield RowBatch(i, i + 1)


def batches(schedule: Union[Schedule, str, int], n_rows: int, n_workers: int,
            min_size: int = 1) -> Generator[RowBatch, None, None]:
    """Dispatches to the batch generator of *schedule*."""
    schedule = Schedule.from_value(schedule)
    if schedule == Schedule.GUIDED: return guided_batches(n_rows, n_workers, min_size)
    if schedule == Schedule.STATIC: return static_batches(n_rows, n_workers)
    return dynamic_batches(n_rows)
