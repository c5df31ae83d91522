"""
Compact distance matrices over a block of series, computed in parallel.

The planner lays out every row of the block in a flat output array before any work starts, so row batches can be
evaluated by independent threads writing to disjoint slices. Kernels are compiled with ``nogil`` and therefore run
concurrently on the shared thread pool.

Examples:
    >>> result = distances_ptrs([[0., 1.], [0., 2.], [1., 1., 1.]])
    >>> result.status, result.length
    (<Status.OK: 0>, 3)
    >>> result.to_square().shape
    (3, 3)
"""
from concurrent.futures import Executor, Future, ThreadPoolExecutor, CancelledError, FIRST_EXCEPTION, wait
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import IntEnum
from functools import lru_cache, partial
from threading import Event
from typing import Union, Iterable, Optional, Callable, Mapping
from warnings import warn

import numpy as np
from scipy.sparse import csr_matrix
from scipy.spatial.distance import squareform

from dtwblock import RESOURCES, AllocationWarning, jit, is_compiled
from dtwblock.core.block import Block, BlockError, PlanAllocationError, Plan, prepare, pair_indices
from dtwblock.core.settings import DTWSettings
from dtwblock.containers.series import SeriesBatch
from dtwblock.engines.dtw import dtw_distance, dtw_distance_ndim
from dtwblock.engines.schedule import Schedule, RowBatch, batches


# Constants ------------------------------------------------------------------------------------------------------------
_KERNEL_CACHE_SIZE = 32


class Status(IntEnum):
    """Outcome of a distance matrix computation."""
    OK = 0
    INVALID_BLOCK = 1
    ALLOCATION_FAILURE = 2
    CANCELLED = 3


# Classes --------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DistanceResult:
    """
    Compact distances of a block, or the reason none were computed.

    ``values[k]`` is the distance of the ``k``-th pair ``(r, c)``, ``c > r``, of the block in row-major order
    (see ``pair_indices``). A failed computation has ``length == 0`` and an empty ``values`` array, which
    ``status`` tells apart from a valid block that contains no pairs.

    Attributes:
        status: The outcome.
        length: Number of distances written.
        block: The normalized block (the caller's own ``Block`` instance if one was passed).
        n: Number of series.
        values: The compact distances.
        error: The exception behind a failed status.
    """
    status: Status
    length: int
    block: Block
    n: int
    values: np.ndarray = field(repr=False)
    error: Optional[BaseException] = field(default=None, repr=False)

    @classmethod
    def failed(cls, status: Status, block: Block, n: int, error: BaseException) -> 'DistanceResult':
        return cls(status, 0, block, n, np.empty(0, dtype=np.float64), error)

    def __bool__(self): return self.status == Status.OK
    def __len__(self): return self.length
    def __array__(self, dtype=None, copy=None): return self.values.astype(dtype or self.values.dtype, copy=bool(copy))

    def raise_for_status(self) -> 'DistanceResult':
        """Re-raises the error behind a failed computation, otherwise returns the result."""
        if self.error is not None: raise self.error
        return self

    def to_square(self, fill: float = np.inf, symmetric: bool = True) -> np.ndarray:
        """
        Expands the compact distances into a dense ``n x n`` matrix.

        Args:
            fill: Value for every cell that was not evaluated, including the diagonal.
            symmetric: Mirror each ``(r, c)`` distance to ``(c, r)``.

        Returns:
            A ``float64`` array of shape ``(n, n)``.
        """
        self.raise_for_status()
        if symmetric and self.block.is_full(self.n):
            # Full blocks are laid out exactly like scipy's condensed distance vectors
            matrix = squareform(self.values, checks=False)
            np.fill_diagonal(matrix, fill)
            return matrix
        matrix = np.full((self.n, self.n), fill, dtype=np.float64)
        rows, cols = pair_indices(self.block, self.n)
        matrix[rows, cols] = self.values
        if symmetric: matrix[cols, rows] = self.values
        return matrix

    def to_sparse(self, symmetric: bool = False) -> csr_matrix:
        """Returns the evaluated pairs as a sparse ``n x n`` matrix."""
        self.raise_for_status()
        rows, cols = pair_indices(self.block, self.n)
        matrix = csr_matrix((self.values, (rows, cols)), shape=(self.n, self.n))
        return (matrix + matrix.T).tocsr() if symmetric else matrix


# Functions ------------------------------------------------------------------------------------------------------------
def distances_ptrs(series: Union[SeriesBatch, Iterable], block=None, settings=None, out: np.ndarray = None,
                   **kwargs) -> DistanceResult:
    """
    Distances between one-dimensional series of (possibly) different lengths.

    Args:
        series: A ``SeriesBatch`` or an iterable of 1-D series.
        block: ``Block``, ``(row_begin, row_end, col_begin, col_end)`` or ``None`` for all pairs.
        settings: ``DTWSettings`` or a mapping of its fields.
        out: Optional ``float64`` output buffer of at least ``distances_length(block, n)`` slots.
        **kwargs: Execution options, see ``compute``.

    Returns:
        A ``DistanceResult``.
    """
    batch = _as_batch(series, 1)
    return compute(_packed_kernel, batch.arrays, len(batch), False, block, settings, out, **kwargs)


def distances_ndim_ptrs(series: Union[SeriesBatch, Iterable], ndim: int, block=None, settings=None,
                        out: np.ndarray = None, **kwargs) -> DistanceResult:
    """
    Distances between n-dimensional series of (possibly) different lengths.

    Each series is a ``(length, ndim)`` array, or flat with ``length * ndim`` samples.

    See Also:
        distances_ptrs
    """
    batch = _as_batch(series, ndim)
    return compute(_packed_kernel, batch.arrays, len(batch), True, block, settings, out, **kwargs)


def distances_matrix(matrix: np.ndarray, block=None, settings=None, out: np.ndarray = None,
                     **kwargs) -> DistanceResult:
    """
    Distances between the rows of a ``(n, length)`` matrix.

    See Also:
        distances_ptrs
    """
    matrix = np.ascontiguousarray(matrix, dtype=np.float64)
    if matrix.ndim != 2: raise ValueError(f'Expected a 2-D matrix, got {matrix.ndim}-D')
    return compute(_matrix_kernel, (matrix,), matrix.shape[0], False, block, settings, out, **kwargs)


def distances_ndim_matrix(matrix: np.ndarray, ndim: int, block=None, settings=None, out: np.ndarray = None,
                          **kwargs) -> DistanceResult:
    """
    Distances between the rows of a ``(n, length, ndim)`` array.

    A ``(n, length * ndim)`` matrix is accepted and viewed as ``(n, length, ndim)``.

    See Also:
        distances_ptrs
    """
    matrix = np.ascontiguousarray(matrix, dtype=np.float64)
    if matrix.ndim == 2 and ndim > 0 and matrix.shape[1] % ndim == 0:
        matrix = matrix.reshape(matrix.shape[0], -1, ndim)
    if matrix.ndim != 3 or matrix.shape[2] != ndim:
        raise ValueError(f'Expected a (n, length, {ndim}) array, got shape {matrix.shape}')
    return compute(_matrix_kernel, (matrix,), matrix.shape[0], True, block, settings, out, **kwargs)


def distance_matrix(data: Union[np.ndarray, SeriesBatch, Iterable], ndim: Optional[int] = None, block=None,
                    settings=None, out: np.ndarray = None, **kwargs) -> DistanceResult:
    """
    Picks the entry point matching the layout of *data*.

    Arrays are treated as matrices (2-D: one series per row, 3-D: n-dimensional rows), anything else as a
    collection of series.

    Examples:
        >>> distance_matrix(np.random.rand(5, 20), block=(0, 2, 0, 5)).length
        7
    """
    if isinstance(data, np.ndarray) and data.dtype != object:
        if ndim is None: ndim = data.shape[2] if data.ndim == 3 else 1
        if ndim == 1 and data.ndim == 2: return distances_matrix(data, block, settings, out, **kwargs)
        return distances_ndim_matrix(data, ndim, block, settings, out, **kwargs)
    batch = data if isinstance(data, SeriesBatch) else SeriesBatch.build(data, ndim)
    if batch.ndim == 1: return distances_ptrs(batch, block, settings, out, **kwargs)
    return distances_ndim_ptrs(batch, batch.ndim, block, settings, out, **kwargs)


def compute(kernel_factory: Callable, arrays: tuple, n: int, ndim: bool, block=None,
            settings: Union[DTWSettings, Mapping, None] = None, out: np.ndarray = None, *,
            distance: Callable = None, n_jobs: Optional[int] = None,
            schedule: Union[Schedule, str, int] = Schedule.GUIDED, pool: Optional[Executor] = None,
            cancel: Optional[Event] = None) -> DistanceResult:
    """
    Plans a block and evaluates it with the row kernel built by *kernel_factory*.

    Args:
        kernel_factory: Builds the row kernel of a layout around a distance function.
        arrays: The layout's arrays, passed first to the row kernel.
        n: Number of series.
        ndim: Whether the series are n-dimensional (selects the default distance).
        block: The block to evaluate; a ``Block`` is normalized in place.
        settings: Settings forwarded to the distance function.
        out: Optional output buffer.
        distance: Replacement for the default DTW distance, ``distance(s1, s2, params) -> float``.
        n_jobs: Number of workers. ``None`` uses every available CPU, ``1`` runs in the calling thread.
        schedule: How rows are batched over workers.
        pool: Executor to run on. Defaults to the shared pool, or a private one when *n_jobs* is given.
        cancel: Event checked before each row batch; once set, remaining batches are skipped.

    Returns:
        A ``DistanceResult``.

    Raises:
        ValueError: If *out* cannot hold the result.
        Exception: The first error raised by the distance function, once every running batch has finished.
    """
    settings = DTWSettings.from_value(settings)
    try:
        block = Block.from_value(block)
        plan = prepare(block, n, settings)
        values = _output_buffer(out, plan.length)
    except BlockError as e:
        return DistanceResult.failed(Status.INVALID_BLOCK, block, n, e)
    except PlanAllocationError as e:
        warn(f'Cannot allocate memory for the distance matrix of {block}: {e}', AllocationWarning)
        return DistanceResult.failed(Status.ALLOCATION_FAILURE, block, n, e)
    if plan.length == 0: return DistanceResult(Status.OK, 0, block, n, values)

    kernel = kernel_factory(_resolve_distance(distance, ndim))
    task = partial(_run_batch, kernel, arrays, plan, settings.params, values, cancel)
    n_workers = n_jobs or RESOURCES.available_cpus
    row_batches = batches(schedule, len(plan), n_workers)

    if pool is None and n_workers == 1:
        completed = [task(b) for b in row_batches]
    else:
        if pool is not None: context = nullcontext(pool)
        elif n_jobs is None: context = nullcontext(RESOURCES.pool)
        else: context = ThreadPoolExecutor(n_workers)
        with context as executor:
            futures = [executor.submit(task, b) for b in row_batches]
            completed = _join(futures)

    if not all(completed):
        return DistanceResult.failed(Status.CANCELLED, block, n, CancelledError(f'Cancelled while computing {block}'))
    return DistanceResult(Status.OK, plan.length, block, n, values)


def _run_batch(kernel: Callable, arrays: tuple, plan: Plan, params: tuple, out: np.ndarray, cancel: Optional[Event],
               batch: RowBatch) -> bool:
    """Runs one batch of rows, unless cancelled. Returns whether the batch ran."""
    if cancel is not None and cancel.is_set(): return False
    kernel(*arrays, plan.col_starts, plan.offsets, plan.block.row_begin, plan.block.col_end, params, out,
           batch.start, batch.stop, batch.step)
    return True


def _join(futures: list[Future]) -> list[bool]:
    """Waits for every batch; after the first failure, batches that have not started yet are cancelled."""
    done, pending = wait(futures, return_when=FIRST_EXCEPTION)
    if pending and any(f.exception() is not None for f in done):
        for f in pending: f.cancel()
    wait(futures)
    for f in futures:
        if not f.cancelled() and (error := f.exception()) is not None: raise error
    return [f.result() for f in futures]


def _output_buffer(out: Optional[np.ndarray], length: int) -> np.ndarray:
    if out is None:
        try: return np.empty(length, dtype=np.float64)
        except MemoryError as e: raise PlanAllocationError(f'Cannot allocate {length} output values') from e
    if not isinstance(out, np.ndarray) or out.dtype != np.float64 or out.ndim != 1:
        raise ValueError('out must be a 1-D float64 array')
    if not (out.flags.c_contiguous and out.flags.writeable): raise ValueError('out must be contiguous and writeable')
    if out.shape[0] < length: raise ValueError(f'out holds {out.shape[0]} values, {length} are required')
    return out[:length]


def _as_batch(series: Union[SeriesBatch, Iterable], ndim: int) -> SeriesBatch:
    batch = series if isinstance(series, SeriesBatch) else SeriesBatch.build(series, ndim)
    if batch.ndim != ndim: raise ValueError(f'Expected {ndim}-dimensional series, got {batch.ndim}')
    return batch


def _resolve_distance(distance: Optional[Callable], ndim: bool) -> Callable:
    if distance is None: return dtw_distance_ndim if ndim else dtw_distance
    return _compiled(distance)


@lru_cache(maxsize=_KERNEL_CACHE_SIZE)
def _compiled(distance: Callable) -> Callable:
    """Compiles a plain Python distance so it can be called from the row kernels."""
    if is_compiled(distance): return distance
    return jit(nopython=True, nogil=True)(distance)


# Kernels --------------------------------------------------------------------------------------------------------------
@lru_cache(maxsize=_KERNEL_CACHE_SIZE)
def _packed_kernel(distance: Callable) -> Callable:
    """Row kernel over a ``SeriesBatch`` layout (``data, starts, lengths``)."""
    @jit(nopython=True, nogil=True)
    def kernel(data, starts, lengths, col_starts, offsets, row_begin, col_end, params, out, start, stop, step):
        for i in range(start, stop, step):
            r = row_begin + i
            s1 = data[starts[r]:starts[r] + lengths[r]]
            k = offsets[i]
            for c in range(col_starts[i], col_end):
                out[k] = distance(s1, data[starts[c]:starts[c] + lengths[c]], params)
                k += 1
    return kernel


@lru_cache(maxsize=_KERNEL_CACHE_SIZE)
def _matrix_kernel(distance: Callable) -> Callable:
    """Row kernel over a contiguous matrix, one series per leading index."""
    @jit(nopython=True, nogil=True)
    def kernel(matrix, col_starts, offsets, row_begin, col_end, params, out, start, stop, step):
        for i in range(start, stop, step):
            r = row_begin + i
            k = offsets[i]
            for c in range(col_starts[i], col_end):
                out[k] = distance(matrix[r], matrix[c], params)
                k += 1
    return kernel
