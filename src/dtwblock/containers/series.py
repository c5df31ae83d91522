"""Flattened containers for variable-length numeric series."""
from typing import Union, Iterable, Optional

import numpy as np


# Classes --------------------------------------------------------------------------------------------------------------
class SeriesBatch:
    """
    Flattened batch of series for Numba-accelerated parallel processing.

    Stores all samples in a single contiguous ``float64`` array with per-series start/length metadata,
    enabling zero-copy slicing inside kernels. One-dimensional series are stored as a 1-D array,
    n-dimensional ones as a ``(total_samples, ndim)`` array.

    Args:
        data: Contiguous ``float64`` array of all samples.
        starts: Per-series start offsets (in samples) into *data*.
        lengths: Per-series lengths (in samples).

    Examples:
        >>> batch = SeriesBatch.build([[1., 2., 3.], [4., 5.]])
        >>> len(batch), batch.ndim
        (2, 1)
        >>> batch[1]
        array([4., 5.])
    """
    __slots__ = ('_data', '_starts', '_lengths')
    def __init__(self, data: np.ndarray, starts: np.ndarray, lengths: np.ndarray):
        if data.ndim not in (1, 2): raise ValueError(f'Series data must be 1-D or 2-D, got {data.ndim}-D')
        if len(starts) != len(lengths): raise ValueError('starts and lengths must have the same size')
        if len(lengths) and (lengths.min() < 0 or (starts + lengths).max() > len(data)):
            raise ValueError('Series extend beyond the data array')
        self._data = data
        self._starts = starts
        self._lengths = lengths
        # Lock arrays for safety
        self._data.flags.writeable = False
        self._starts.flags.writeable = False
        self._lengths.flags.writeable = False

    @classmethod
    def build(cls, series: Iterable[Union[np.ndarray, Iterable[float]]], ndim: Optional[int] = None) -> 'SeriesBatch':
        """
        Packs an iterable of series into a batch.

        Args:
            series: Series as arrays or nested sequences. With ``ndim`` > 1 each series must be
                ``(length, ndim)`` or flat with a multiple of ``ndim`` samples.
            ndim: Number of components per sample. Inferred from the first series if omitted.

        Returns:
            A new ``SeriesBatch``.

        Raises:
            ValueError: If the series do not share the same number of components.
        """
        arrays = [np.asarray(s, dtype=np.float64) for s in series]
        if ndim is None: ndim = arrays[0].shape[1] if arrays and arrays[0].ndim == 2 else 1
        if ndim < 1: raise ValueError(f'ndim must be positive, got {ndim}')
        if ndim == 1:
            arrays = [a.reshape(-1) if a.ndim == 2 and a.shape[1] == 1 else a for a in arrays]
            if any(a.ndim != 1 for a in arrays): raise ValueError('Expected 1-D series')
        else:
            for i, a in enumerate(arrays):
                if a.ndim == 1 and a.size % ndim == 0: arrays[i] = a.reshape(-1, ndim)
                elif a.ndim != 2 or a.shape[1] != ndim:
                    raise ValueError(f'Series {i} has shape {a.shape}, expected (length, {ndim})')

        lengths = np.array([len(a) for a in arrays], dtype=np.int64)
        starts = np.zeros(len(lengths), dtype=np.int64)
        if len(lengths) > 1: np.cumsum(lengths[:-1], out=starts[1:])
        if arrays: data = np.ascontiguousarray(np.concatenate(arrays))
        else: data = np.empty(0 if ndim == 1 else (0, ndim), dtype=np.float64)
        return cls(data, starts, lengths)

    @classmethod
    def empty(cls, ndim: int = 1) -> 'SeriesBatch':
        """Creates an empty batch."""
        return cls.build([], ndim=ndim)

    # --- Numba Accessors ---
    # Properties to unpack into Numba function arguments: *batch.arrays
    @property
    def arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Returns ``(data, starts, lengths)`` for Numba kernel unpacking."""
        return self._data, self._starts, self._lengths

    @property
    def ndim(self) -> int:
        """Number of components per sample."""
        return 1 if self._data.ndim == 1 else self._data.shape[1]

    @property
    def lengths(self) -> np.ndarray: return self._lengths

    def __len__(self) -> int: return len(self._lengths)
    def __bool__(self): return len(self) > 0
    def __iter__(self):
        for i in range(len(self)): yield self[i]

    def __getitem__(self, item: int) -> np.ndarray:
        if not isinstance(item, (int, np.integer)): raise TypeError(f'Invalid index type: {type(item).__name__}')
        if item < 0: item += len(self)
        if not 0 <= item < len(self): raise IndexError(f'Series index {item} out of range')
        start = self._starts[item]
        return self._data[start:start + self._lengths[item]]

    def __repr__(self): return f"<SeriesBatch: {len(self)} series, ndim={self.ndim}>"
