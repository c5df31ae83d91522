import time
from concurrent.futures import CancelledError, ThreadPoolExecutor
from threading import Event

import numpy as np
import pytest
from scipy.sparse import csr_matrix
from dtwblock import AllocationWarning, jit
from dtwblock.core.block import Block, BlockError, PlanAllocationError, distances_length, pair_indices
from dtwblock.core.settings import DTWSettings
from dtwblock.containers.series import SeriesBatch
from dtwblock.engines import matrix as engine
from dtwblock.engines.dtw import distance
from dtwblock.engines.matrix import (
    Status, DistanceResult, distances_ptrs, distances_ndim_ptrs, distances_matrix, distances_ndim_matrix,
    distance_matrix
)


@pytest.fixture(scope='module')
def series():
    rng = np.random.default_rng(0)
    return [rng.normal(size=rng.integers(3, 15)) for _ in range(9)]


@pytest.fixture(scope='module')
def ndim_series():
    rng = np.random.default_rng(1)
    return [rng.normal(size=(rng.integers(3, 10), 2)) for _ in range(7)]


def expected_values(series, block, settings=None):
    rows, cols = pair_indices(block, len(series))
    return np.array([distance(series[r], series[c], settings) for r, c in zip(rows, cols)])


class TestLayouts:
    def test_ptrs(self, series):
        result = distances_ptrs(series, n_jobs=1)
        assert result.status == Status.OK
        assert result.length == len(series) * (len(series) - 1) // 2
        np.testing.assert_allclose(result.values, expected_values(series, None))

    def test_ptrs_from_batch(self, series):
        result = distances_ptrs(SeriesBatch.build(series), block=(1, 5, 0, 9), n_jobs=1)
        np.testing.assert_allclose(result.values, expected_values(series, Block(1, 5, 0, 9)))

    def test_ndim_ptrs(self, ndim_series):
        result = distances_ndim_ptrs(ndim_series, 2, n_jobs=1)
        np.testing.assert_allclose(result.values, expected_values(ndim_series, None))

    def test_matrix(self):
        matrix = np.random.default_rng(2).normal(size=(6, 12))
        result = distances_matrix(matrix, block=Block(0, 6, 2, 5), n_jobs=1)
        assert result.length == distances_length(Block(0, 6, 2, 5), 6)
        np.testing.assert_allclose(result.values, expected_values(list(matrix), Block(0, 6, 2, 5)))

    def test_ndim_matrix(self):
        array = np.random.default_rng(3).normal(size=(5, 8, 3))
        result = distances_ndim_matrix(array, 3, n_jobs=1)
        np.testing.assert_allclose(result.values, expected_values(list(array), None))

    def test_ndim_matrix_flat(self):
        array = np.random.default_rng(3).normal(size=(5, 8, 3))
        flat = distances_ndim_matrix(array.reshape(5, 24), 3, n_jobs=1)
        np.testing.assert_array_equal(flat.values, distances_ndim_matrix(array, 3, n_jobs=1).values)

    def test_matrix_equals_ptrs(self):
        matrix = np.random.default_rng(4).normal(size=(6, 10))
        np.testing.assert_array_equal(distances_matrix(matrix, n_jobs=1).values,
                                      distances_ptrs(list(matrix), n_jobs=1).values)

    def test_settings_forwarded(self, series):
        settings = DTWSettings(window=2, penalty=0.1)
        result = distances_ptrs(series, settings=settings, n_jobs=1)
        np.testing.assert_allclose(result.values, expected_values(series, None, settings))

    def test_settings_mapping(self, series):
        a = distances_ptrs(series, settings={'window': 2}, n_jobs=1)
        b = distances_ptrs(series, settings=DTWSettings(window=2), n_jobs=1)
        np.testing.assert_array_equal(a.values, b.values)

    def test_wrong_rank(self):
        with pytest.raises(ValueError, match="2-D"):
            distances_matrix(np.zeros((2, 3, 4)))
        with pytest.raises(ValueError, match="length, 2"):
            distances_ndim_matrix(np.zeros((2, 3, 4)), 2)
        with pytest.raises(ValueError, match="2-dimensional"):
            distances_ndim_ptrs(SeriesBatch.build([np.zeros(3)]), 2)


class TestParallel:
    @pytest.mark.parametrize('schedule', ['guided', 'static', 'dynamic'])
    @pytest.mark.parametrize('block', [None, Block(1, 7, 0, 9), Block(0, 9, 5, 9), Block(3, 4, 0, 0)])
    def test_matches_sequential(self, series, schedule, block):
        sequential = distances_ptrs(series, block=None if block is None else Block(*block), n_jobs=1)
        parallel = distances_ptrs(series, block=None if block is None else Block(*block), n_jobs=4,
                                  schedule=schedule)
        assert parallel.length == sequential.length
        np.testing.assert_array_equal(parallel.values, sequential.values)

    def test_shared_pool(self, series):
        np.testing.assert_array_equal(distances_ptrs(series).values, distances_ptrs(series, n_jobs=1).values)

    def test_explicit_pool(self, ndim_series):
        with ThreadPoolExecutor(3) as pool:
            result = distances_ndim_ptrs(ndim_series, 2, pool=pool)
        np.testing.assert_array_equal(result.values, distances_ndim_ptrs(ndim_series, 2, n_jobs=1).values)

    def test_cancelled(self, series):
        cancel = Event()
        cancel.set()
        result = distances_ptrs(series, n_jobs=2, cancel=cancel)
        assert result.status == Status.CANCELLED
        assert result.length == 0
        with pytest.raises(CancelledError):
            result.raise_for_status()


class TestBlocks:
    def test_block_normalized_in_place(self, series):
        block = Block(2, 0, 0, 0)
        result = distances_ptrs(series, block=block, n_jobs=1)
        assert result.block is block
        assert tuple(block) == (2, 9, 0, 9)

    def test_default_expansion(self):
        matrix = np.random.default_rng(5).normal(size=(5, 6))
        a = distances_matrix(matrix, block=Block(1, 0, 2, 0), n_jobs=1)
        b = distances_matrix(matrix, block=Block(1, 5, 2, 5), n_jobs=1)
        np.testing.assert_array_equal(a.values, b.values)

    @pytest.mark.parametrize('block', [Block(4, 2, 0, 9), Block(0, 9, 6, 6), (0, 10, 0, 9), (0, -1, 0, 0), (0, 1, 2)])
    def test_invalid_block(self, series, block):
        out = np.full(100, -1.0)
        result = distances_ptrs(series, block=block, out=out)
        assert result.status == Status.INVALID_BLOCK
        assert result.length == 0
        assert not result
        assert np.all(out == -1.0)
        with pytest.raises(BlockError):
            result.raise_for_status()

    def test_empty_valid_block_is_ok(self, series):
        result = distances_ptrs(series, block=Block(5, 9, 0, 3))
        assert result.status == Status.OK
        assert result.length == 0
        assert result

    def test_allocation_failure(self, series, monkeypatch):
        def fail(*args, **kwargs): raise PlanAllocationError('out of memory')
        monkeypatch.setattr(engine, 'prepare', fail)
        with pytest.warns(AllocationWarning, match="Cannot allocate"):
            result = distances_ptrs(series)
        assert result.status == Status.ALLOCATION_FAILURE
        assert result.length == 0
        with pytest.raises(MemoryError):
            result.raise_for_status()


class TestOutput:
    def test_caller_buffer(self, series):
        out = np.full(50, -1.0)
        result = distances_ptrs(series, block=(0, 2, 0, 9), out=out, n_jobs=1)
        assert result.length == 15
        assert np.shares_memory(result.values, out)
        np.testing.assert_array_equal(out[15:], -1.0)
        np.testing.assert_allclose(out[:15], expected_values(series, Block(0, 2, 0, 9)))

    def test_buffer_too_small(self, series):
        with pytest.raises(ValueError, match="required"):
            distances_ptrs(series, out=np.empty(3))

    def test_buffer_dtype(self, series):
        with pytest.raises(ValueError, match="float64"):
            distances_ptrs(series, out=np.empty(100, dtype=np.float32))


class TestConversions:
    def test_to_square_full(self, series):
        result = distances_ptrs(series, n_jobs=1)
        square = result.to_square(fill=0.0)
        assert square.shape == (9, 9)
        np.testing.assert_array_equal(square, square.T)
        np.testing.assert_array_equal(np.diag(square), 0.0)
        assert square[2, 7] == pytest.approx(distance(series[2], series[7]))

    def test_to_square_block(self, series):
        result = distances_ptrs(series, block=Block(1, 3, 0, 5), n_jobs=1)
        square = result.to_square(symmetric=False)
        assert np.isinf(square[0, 1])
        assert np.isinf(square[2, 1])
        assert square[1, 4] == pytest.approx(distance(series[1], series[4]))
        assert np.isfinite(square).sum() == result.length

    def test_to_sparse(self, series):
        result = distances_ptrs(series, block=Block(1, 3, 0, 5), n_jobs=1)
        sparse = result.to_sparse()
        assert isinstance(sparse, csr_matrix)
        assert sparse.shape == (9, 9)
        assert sparse[2, 3] == pytest.approx(distance(series[2], series[3]))
        sym = result.to_sparse(symmetric=True)
        assert sym[3, 2] == sym[2, 3]

    def test_to_square_failed(self, series):
        with pytest.raises(BlockError):
            distances_ptrs(series, block=(3, 1, 0, 0)).to_square()


class TestDispatch:
    def test_array_2d(self):
        matrix = np.random.default_rng(6).normal(size=(5, 20))
        result = distance_matrix(matrix, block=(0, 2, 0, 5), n_jobs=1)
        assert result.length == 7

    def test_array_3d(self):
        array = np.random.default_rng(6).normal(size=(4, 5, 2))
        np.testing.assert_array_equal(distance_matrix(array, n_jobs=1).values,
                                      distances_ndim_matrix(array, 2, n_jobs=1).values)

    def test_list(self, series, ndim_series):
        np.testing.assert_array_equal(distance_matrix(series, n_jobs=1).values,
                                      distances_ptrs(series, n_jobs=1).values)
        np.testing.assert_array_equal(distance_matrix(ndim_series, n_jobs=1).values,
                                      distances_ndim_ptrs(ndim_series, 2, n_jobs=1).values)


class TestCustomDistance:
    def test_python_function(self):
        def absolute_mean_difference(s1, s2, params):
            return abs(s1.mean() - s2.mean())

        matrix = np.arange(12, dtype=np.float64).reshape(4, 3)
        result = distances_matrix(matrix, distance=absolute_mean_difference, n_jobs=2)
        np.testing.assert_allclose(result.values, [3., 6., 9., 3., 6., 3.])

    def test_result_is_array_like(self):
        result = distances_matrix(np.zeros((3, 4)), n_jobs=1)
        assert isinstance(result, DistanceResult)
        np.testing.assert_array_equal(np.asarray(result), [0., 0., 0.])
        assert len(result) == 3

    def test_array_copy(self):
        out = np.zeros(10)
        result = distances_matrix(np.zeros((3, 4)), out=out, n_jobs=1)
        assert np.shares_memory(np.asarray(result), out)
        assert not np.shares_memory(np.array(result, copy=True), out)


class TestWorkerErrors:
    def test_joins_all_batches_on_caller_pool(self):
        @jit(nopython=True, nogil=True)
        def failing_on_row_ten(s1, s2, params):
            if s1[0] == 10.0: raise ValueError('row ten')
            acc = 0.0
            for k in range(3_000_000): acc += np.sin(k * s2[0]) * 1e-12
            return abs(s1[0] - s2[0]) + acc

        matrix = np.repeat(np.arange(12, dtype=np.float64), 2).reshape(12, 2)
        out = np.full(66, -1.0)
        with ThreadPoolExecutor(4) as pool:
            with pytest.raises(ValueError, match="row ten"):
                distances_matrix(matrix, out=out, distance=failing_on_row_ten, pool=pool, schedule='dynamic')
            snapshot = out.copy()
            time.sleep(0.5)
            np.testing.assert_array_equal(out, snapshot)


class TestKernelCache:
    def test_fresh_closures_stay_bounded(self):
        def shifted_by(shift):
            def shifted(s1, s2, params): return abs(s1[0] - s2[0]) + shift
            return shifted

        matrix = np.arange(12, dtype=np.float64).reshape(4, 3)
        for shift in range(3):
            result = distances_matrix(matrix, distance=shifted_by(shift), n_jobs=1)
            np.testing.assert_allclose(result.values, np.array([3., 6., 9., 3., 6., 3.]) + shift)
        for cache in (engine._compiled, engine._matrix_kernel, engine._packed_kernel):
            info = cache.cache_info()
            assert info.maxsize is not None
            assert info.currsize <= info.maxsize
