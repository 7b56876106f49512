import os

import numpy as np
import pytest
from numcodecs import Zlib

import ndchunk
from ndchunk.codec import BlockCodec
from ndchunk.coords import as_slices, prod, range_shape
from ndchunk.errors import InvalidArgumentError
from ndchunk.slicing import ChunkLayout, ChunkTransaction
from ndchunk.tests.util import failing_array, mkdtemp, mktemp, sequence

BACKENDS = ["frame", "frame-file", "memory", "directory"]


def create(backend, shape, **kwargs):
    if backend == "frame":
        return ndchunk.zeros(shape, contiguous=True, **kwargs)
    if backend == "frame-file":
        return ndchunk.zeros(shape, contiguous=True, path=mktemp(suffix=".frame"),
                             overwrite=True, **kwargs)
    if backend == "memory":
        return ndchunk.zeros(shape, contiguous=False, **kwargs)
    return ndchunk.zeros(shape, contiguous=False, path=os.path.join(mkdtemp(), "array"),
                         **kwargs)


# (shape, chunks, blocks, start, stop)
SET_SLICE_CASES = [
    ((), (), (), (), ()),
    ((5,), (3,), (2,), (2,), (5,)),
    ((20, 0), (7, 0), (3, 0), (2, 0), (8, 0)),
    ((20, 10), (7, 5), (3, 5), (2, 0), (18, 0)),
    ((14, 10), (8, 5), (2, 2), (5, 3), (9, 10)),
    ((12, 10, 14), (3, 5, 9), (3, 4, 4), (3, 0, 3), (6, 7, 10)),
    ((10, 21, 30, 5), (8, 7, 15, 3), (5, 5, 10, 1), (5, 4, 3, 3), (10, 8, 8, 4)),
    ((50, 50), (25, 13), (8, 8), (0, 0), (10, 10)),
    ((150, 45), (15, 15), (7, 7), (4, 2), (6, 5)),
    ((10, 10), (5, 7), (2, 2), (0, 0), (5, 5)),
]


@pytest.mark.parametrize("backend", BACKENDS)
@pytest.mark.parametrize("itemsize", [1, 2, 4, 8])
@pytest.mark.parametrize("shape, chunks, blocks, start, stop", SET_SLICE_CASES)
def test_set_slice_buffer(backend, itemsize, shape, chunks, blocks, start, stop):
    z = create(backend, shape, itemsize=itemsize, chunks=chunks, blocks=blocks)
    value_shape = range_shape(start, stop)
    value = sequence(prod(value_shape), itemsize)

    z.set_slice_buffer(value, start, stop)

    # the slice reads back exactly
    out = bytearray(value.nbytes)
    z.get_slice_buffer(start, stop, out)
    assert value.tobytes() == bytes(out)

    # everything else is still zero
    expect = np.zeros(shape, dtype=z.dtype)
    expect[as_slices(start, stop)] = value.reshape(value_shape)
    assert expect.tobytes() == z.to_buffer()

    z.free()


@pytest.mark.parametrize("backend", BACKENDS)
def test_slices_survive_reopen(backend):
    if backend in ("frame", "memory"):
        pytest.skip("in-memory arrays do not persist")
    z = create(backend, (14, 10), itemsize=2, chunks=(8, 5), blocks=(2, 2))
    value = sequence(4 * 7, 2)
    z.set_slice_buffer(value, (5, 3), (9, 10))
    z.free()

    z = ndchunk.open_array(z.path, mode="r")
    assert value.tobytes() == z.get_slice((5, 3), (9, 10)).tobytes()
    assert 0 == z[0, 0]
    z.free()


def test_threaded(max_workers):
    a = np.arange(150 * 45, dtype="u8").reshape(150, 45)
    z = ndchunk.zeros(a.shape, itemsize=8, chunks=(15, 15), blocks=(7, 7))
    z.set_slice_buffer(a, (0, 0), a.shape)
    np.testing.assert_array_equal(a, z.get_slice())
    np.testing.assert_array_equal(a[20:100, 3:40], z.get_slice((20, 3), (100, 40)))


class TestSliceBuffers:

    def test_larger_destination(self):
        a = np.arange(100, dtype="u2").reshape(10, 10)
        z = ndchunk.array(a, chunks=(4, 4), blocks=(2, 2))
        out = np.full((5, 6), 999, dtype="u2")
        z.get_slice_buffer((2, 3), (5, 7), out, out_shape=(5, 6))
        # the range lands at the origin of out, the rest is untouched
        expect = np.full((5, 6), 999, dtype="u2")
        expect[:3, :4] = a[2:5, 3:7]
        np.testing.assert_array_equal(expect, out)

    def test_larger_source(self):
        z = ndchunk.zeros((6, 6), itemsize=1, chunks=(4, 4), blocks=(2, 2))
        src = np.arange(1, 21, dtype="u1").reshape(4, 5)
        # a 2x3 region read from the origin of a 4x5 buffer
        z.set_slice_buffer(src, (1, 1), (3, 4), value_shape=(4, 5))
        expect = np.zeros((6, 6), dtype="u1")
        expect[1:3, 1:4] = src[:2, :3]
        np.testing.assert_array_equal(expect, z[...])

    def test_bad_ranges(self):
        z = ndchunk.zeros((10, 10), itemsize=1, chunks=(5, 5), blocks=(5, 5))
        out = bytearray(100)
        for start, stop in [((0, 0), (11, 10)),
                            ((-1, 0), (5, 5)),
                            ((5, 5), (4, 6)),
                            ((0,), (5,)),
                            ((0, 0, 0), (1, 1, 1))]:
            with pytest.raises(InvalidArgumentError):
                z.get_slice_buffer(start, stop, out)
            with pytest.raises(InvalidArgumentError):
                z.set_slice_buffer(out, start, stop)
        # nothing was written
        assert 0 == z.nchunks_initialized

    def test_bad_buffers(self):
        z = ndchunk.zeros((10, 10), itemsize=2, chunks=(5, 5), blocks=(5, 5))
        with pytest.raises(InvalidArgumentError):
            z.get_slice_buffer((0, 0), (2, 2), bytearray(7))
        with pytest.raises(InvalidArgumentError):
            z.set_slice_buffer(b"\x00" * 7, (0, 0), (2, 2))
        with pytest.raises(InvalidArgumentError):
            z.get_slice_buffer((0, 0), (2, 2), b"\x00" * 8)
        with pytest.raises(InvalidArgumentError):
            z.get_slice_buffer((0, 0), (2, 2), bytearray(100), out_shape=(1, 8))
        assert 0 == z.nchunks_initialized

    def test_empty_range(self):
        z = ndchunk.zeros((10, 10), itemsize=1, chunks=(5, 5), blocks=(5, 5))
        out = bytearray()
        assert out is z.get_slice_buffer((3, 3), (3, 10), out)
        z.set_slice_buffer(b"", (3, 3), (10, 3))
        assert 0 == z.nchunks_initialized


class TestUniformChunks:

    def test_full_is_lazy(self):
        z = ndchunk.full((100, 100), fill_value=7, itemsize=4, chunks=(10, 10),
                         blocks=(5, 5), compressor=Zlib(1))
        assert 0 == z.nchunks_initialized
        assert np.all(z[...] == 7)
        assert 0 == z.nchunks_initialized

        # a write only materializes the chunks it touches
        z[5:15, 0] = 1
        assert 2 == z.nchunks_initialized
        assert 1 == z[14, 0]
        assert 7 == z[14, 1]
        assert 7 == z[99, 99]

    def test_opaque_fill(self):
        z = ndchunk.full((5, 5), fill_value=b"abc", itemsize=3, chunks=(2, 2), blocks=(1, 1))
        assert b"abc" * 25 == z.to_buffer()
        z.set_slice_buffer(b"xyz", (4, 4), (5, 5))
        assert b"abc" * 24 + b"xyz" == z.to_buffer()

    def test_padding_is_hidden(self):
        # chunk and block shapes larger than the array
        z = ndchunk.full((3, 5), fill_value=9, itemsize=1, chunks=(8, 8), blocks=(4, 8))
        a = np.arange(15, dtype="u1").reshape(3, 5)
        z[...] = a
        np.testing.assert_array_equal(a, z[...])
        z.resize(8, 8)
        expect = np.full((8, 8), 9, dtype="u1")
        expect[:3, :5] = a
        np.testing.assert_array_equal(expect, z[...])


class TestBlockDecoding:

    @pytest.fixture
    def decoded(self, monkeypatch):
        # sizes of the blocks decompressed, in call order
        calls = []
        decompress = BlockCodec.decompress

        def counting(self, cdata, expected_size):
            calls.append(expected_size)
            return decompress(self, cdata, expected_size)

        monkeypatch.setattr(BlockCodec, "decompress", counting)
        return calls

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_read_decodes_overlapping_blocks(self, backend, decoded):
        z = create(backend, 1000, itemsize=4, chunks=100, blocks=10)
        z[:] = np.arange(1000, dtype="u4")
        del decoded[:]

        np.testing.assert_array_equal(np.arange(15, 25), z[15:25])
        assert 2 == len(decoded)

        # one block on each side of a chunk boundary
        del decoded[:]
        np.testing.assert_array_equal(np.arange(95, 105), z[95:105])
        assert 2 == len(decoded)

        # a single item
        del decoded[:]
        assert 512 == z[512]
        assert 1 == len(decoded)

    def test_uniform_chunks_are_not_decoded(self, decoded):
        z = ndchunk.full(1000, fill_value=3, itemsize=4, chunks=100, blocks=10)
        np.testing.assert_array_equal(np.full(100, 3), z[450:550])
        z[450:455] = 7
        assert [] == decoded

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_write_decodes_partial_blocks_only(self, backend, decoded):
        z = create(backend, 1000, itemsize=4, chunks=100, blocks=10)
        z[:] = np.arange(1000, dtype="u4")
        assert [] == decoded

        # both touched blocks are partially covered
        z[15:25] = 0
        assert 2 == len(decoded)

        # whole blocks are rewritten without being decoded
        del decoded[:]
        z[10:30] = 1
        assert [] == decoded

        # only the partial block at each end is decoded
        del decoded[:]
        z[5:45] = 2
        assert 2 == len(decoded)

        expect = np.arange(1000, dtype="u4")
        expect[10:30] = 1
        expect[5:45] = 2
        np.testing.assert_array_equal(expect, z[:])


class TestChunkTransaction:

    def test_write_failure_restores_chunks(self):
        z = failing_array((10,), itemsize=1, chunks=(2,), blocks=(1,))
        store = z.store

        z[...] = np.arange(10, dtype="u1")
        before = z.to_buffer()
        store.fail_after = 2
        with pytest.raises(OSError):
            z[1:9] = 99
        assert before == z.to_buffer()
        assert 5 == z.nchunks_initialized

    def test_write_failure_deletes_new_chunks(self):
        z = failing_array((10,), itemsize=1, chunks=(2,), blocks=(1,))
        store = z.store

        store.fail_after = 3
        with pytest.raises(OSError):
            z[...] = 5
        assert 0 == z.nchunks_initialized
        assert b"\x00" * 10 == z.to_buffer()

    def test_record_keeps_first_state(self):
        store = ndchunk.MemoryStore()
        store.put_chunk(0, b"old")
        txn = ChunkTransaction(store)
        txn.record(0, b"old")
        txn.record(1, None)
        txn.commit({0: b"new", 1: b"created"})
        txn.record(0, b"new")
        txn.rollback()
        assert b"old" == store.get_chunk(0)
        assert store.get_chunk(1) is None


def test_chunk_layout():
    layout = ChunkLayout((20, 10), (7, 5), (3, 5), 2)
    assert (3, 2) == layout.cdata_shape
    assert (3, 1) == layout.block_grid
    assert 3 == layout.nblocks
    assert (3, 5, 2) == layout.block_shape
    assert 30 == layout.block_nbytes

    regions = list(layout.chunk_regions((5, 3), (9, 10)))
    assert [(0, 0), (0, 1), (1, 0), (1, 1)] == [r[0] for r in regions]
    assert ((0, 0), (5, 3), (7, 5)) == regions[0][1:]
    assert ((7, 5), (0, 0), (2, 5)) == regions[3][1:]

    # the last chunk along dimension 0 holds 6 items
    blocks = list(layout.block_regions((2, 0), (0, 0), (6, 5)))
    assert [0, 1] == [b[0] for b in blocks]
    assert all(b[4] for b in blocks)
    blocks = list(layout.block_regions((2, 0), (1, 0), (6, 5)))
    assert [False, True] == [b[4] for b in blocks]
