import numpy as np
import pytest

from ndchunk.errors import InvalidArgumentError
from ndchunk.util import (ensure_byte_view, guess_blocks, guess_chunks, human_readable_size,
                          info_text_report, itemsize_dtype, normalize_coords,
                          normalize_fill_value, normalize_itemsize, normalize_partition,
                          normalize_resize_args, normalize_shape, retry_call)


def test_normalize_shape():
    assert (100,) == normalize_shape((100,))
    assert (100,) == normalize_shape([100])
    assert (100,) == normalize_shape(100)
    assert () == normalize_shape(())
    with pytest.raises(TypeError):
        normalize_shape(None)
    with pytest.raises(ValueError):
        normalize_shape('foo')
    with pytest.raises(InvalidArgumentError):
        normalize_shape((1,) * 9)
    with pytest.raises(InvalidArgumentError):
        normalize_shape((10, -1))


def test_normalize_partition():
    assert (10,) == normalize_partition((10,), (100,), 'chunks')
    assert (10,) == normalize_partition(10, (100,), 'chunks')
    assert (10, 10) == normalize_partition(10, (100, 10), 'chunks')
    assert (10, 10) == normalize_partition((10, None), (100, 10), 'chunks')
    assert (10, 10) == normalize_partition((10, -1), (100, 10), 'chunks')
    assert () == normalize_partition((), (), 'blocks')
    with pytest.raises(InvalidArgumentError):
        normalize_partition((100, 10), (100,), 'chunks')


def test_normalize_resize_args():

    # 1D
    assert (200,) == normalize_resize_args((100,), 200)
    assert (200,) == normalize_resize_args((100,), (200,))

    # 2D
    assert (200, 100) == normalize_resize_args((100, 100), (200, 100))
    assert (200, 100) == normalize_resize_args((100, 100), (200, None))
    assert (200, 100) == normalize_resize_args((100, 100), 200, 100)
    assert (200, 100) == normalize_resize_args((100, 100), 200, None)

    with pytest.raises(InvalidArgumentError):
        normalize_resize_args((100,), (200, 100))
    with pytest.raises(InvalidArgumentError):
        normalize_resize_args((100,), -1)


def test_normalize_itemsize():
    assert 1 == normalize_itemsize(1)
    assert 255 == normalize_itemsize(np.int64(255))
    for bad in 0, 256, -4, 'foo', None:
        with pytest.raises(InvalidArgumentError):
            normalize_itemsize(bad)


def test_itemsize_dtype():
    assert np.dtype('<u1') == itemsize_dtype(1)
    assert np.dtype('<u2') == itemsize_dtype(2)
    assert np.dtype('<u4') == itemsize_dtype(4)
    assert np.dtype('<u8') == itemsize_dtype(8)
    assert np.dtype('V3') == itemsize_dtype(3)
    assert np.dtype('V16') == itemsize_dtype(16)


def test_normalize_fill_value():
    assert normalize_fill_value(None, 4) is None
    assert b'\x01\x00' == normalize_fill_value(1, 2)
    assert b'\xff\xff' == normalize_fill_value(-1, 2)
    assert b'abc' == normalize_fill_value(b'abc', 3)
    assert b'abc' == normalize_fill_value(bytearray(b'abc'), 3)
    assert np.float64(1.5).tobytes() == normalize_fill_value(1.5, 8)
    assert np.float32(1.5).tobytes() == normalize_fill_value(1.5, 4)
    assert np.uint16(7).tobytes() == normalize_fill_value(np.uint16(7), 2)

    with pytest.raises(InvalidArgumentError):
        normalize_fill_value(256, 1)
    with pytest.raises(InvalidArgumentError):
        normalize_fill_value(b'ab', 3)
    with pytest.raises(InvalidArgumentError):
        normalize_fill_value(1.5, 2)
    with pytest.raises(InvalidArgumentError):
        normalize_fill_value('foo', 3)


def test_normalize_coords():
    assert (1, 2) == normalize_coords([1, 2], 2, 'start')
    assert (3,) == normalize_coords(3, 1, 'start')
    assert () == normalize_coords((), 0, 'start')
    with pytest.raises(InvalidArgumentError):
        normalize_coords((1, 2), 3, 'stop')


def test_ensure_byte_view():
    a = np.arange(4, dtype='<u2')
    v = ensure_byte_view(a)
    assert v.dtype == np.uint8
    assert 8 == v.nbytes
    assert np.shares_memory(a, v)

    b = bytearray(6)
    ensure_byte_view(b, writeable=True)[:] = 1
    assert b'\x01' * 6 == bytes(b)

    with pytest.raises(InvalidArgumentError):
        ensure_byte_view(b'abc', writeable=True)


def test_guess_chunks():
    shapes = (
        (100,),
        (100, 100),
        (1000000,),
        (1000000000,),
        (10000000000000000000000,),
        (10000, 10000),
        (10000000, 1000),
        (1000, 10000000),
        (10000000, 1000, 2),
        (1000, 10000000, 2),
        (10000, 10000, 10000),
        (100000, 100000, 100000),
        (1000000000, 1000000000, 1000000000),
        (0,),
        (0, 0),
        (10, 0),
        (0, 10),
        (1, 2, 0, 4, 5),
    )
    for shape in shapes:
        chunks = guess_chunks(shape, 1)
        assert isinstance(chunks, tuple)
        assert len(chunks) == len(shape)
        # doesn't make any sense to allow chunks to have zero length dimension
        assert all(0 < c <= max(s, 1) for c, s in zip(chunks, shape))

    # ludicrous itemsize
    chunks = guess_chunks((1000000,), 40000000000)
    assert isinstance(chunks, tuple)
    assert (1,) == chunks


def test_guess_blocks():
    for chunks, itemsize in ((100,), 8), ((1000, 1000), 4), ((7, 13, 5), 3), ((), 8):
        blocks = guess_blocks(chunks, itemsize)
        assert len(blocks) == len(chunks)
        assert all(0 < b <= c for b, c in zip(blocks, chunks))
    assert (100,) == guess_blocks((100,), 8)
    blocks = guess_blocks((1000, 1000), 4)
    assert np.prod(blocks) * 4 <= 32 * 1024


def test_human_readable_size():
    assert '100' == human_readable_size(100)
    assert '1.0K' == human_readable_size(2**10)
    assert '1.0M' == human_readable_size(2**20)
    assert '1.0G' == human_readable_size(2**30)
    assert '1.0T' == human_readable_size(2**40)
    assert '1.0P' == human_readable_size(2**50)


def test_info_text_report():
    items = [('foo', 'bar'), ('baz', 'qux')]
    expect = "foo : bar\nbaz : qux\n"
    assert expect == info_text_report(items)


class PermissionErrorProvider:

    def __init__(self, fails):
        self.fails = fails

    def __call__(self):
        if self.fails > 0:
            self.fails -= 1
            raise PermissionError()


def test_retry_call():

    fixture = PermissionErrorProvider(1)
    retry_call(fixture, exceptions=(PermissionError,), wait=0)

    fixture = PermissionErrorProvider(3)
    with pytest.raises(PermissionError):
        retry_call(fixture, exceptions=(PermissionError,), retries=2, wait=0)
