import json
import math
import numbers
from textwrap import TextWrapper
import time

import numpy as np
from numcodecs.compat import ensure_contiguous_ndarray_like, ensure_text

from typing import Any, Callable, Dict, Optional, Tuple

from ndchunk.defaults import MAX_DIM, MAX_ITEMSIZE
from ndchunk.errors import InvalidArgumentError


def json_dumps(o: Any) -> bytes:
    """Write JSON in a consistent, human-readable way."""
    return json.dumps(o, indent=4, sort_keys=True, ensure_ascii=True,
                      separators=(',', ': ')).encode('ascii')


def json_loads(s) -> Dict[str, Any]:
    """Read JSON in a consistent way."""
    return json.loads(ensure_text(s, 'ascii'))


def normalize_shape(shape) -> Tuple[int, ...]:
    """Convenience function to normalize the `shape` argument."""

    if shape is None:
        raise TypeError('shape is None')

    # handle 1D convenience form
    if isinstance(shape, numbers.Integral):
        shape = (int(shape),)

    # normalize
    shape = tuple(int(s) for s in shape)
    if len(shape) > MAX_DIM:
        raise InvalidArgumentError(
            'too many dimensions; expected at most {}, got {}'.format(MAX_DIM, len(shape)))
    if any(s < 0 for s in shape):
        raise InvalidArgumentError('negative extent in shape {!r}'.format(shape))
    return shape


# code to guess chunk shape, adapted from h5py

CHUNK_BASE = 256*1024  # Multiplier by which chunks are adjusted
CHUNK_MIN = 128*1024  # Soft lower limit (128k)
CHUNK_MAX = 64*1024*1024  # Hard upper limit

# blocks should fit comfortably in L2 cache
BLOCK_TARGET = 32*1024


def _halve_until(sizes, typesize, target):
    ndims = len(sizes)
    idx = 0
    while ndims and np.prod(sizes)*typesize > target and np.prod(sizes) > 1:
        sizes[idx % ndims] = math.ceil(sizes[idx % ndims] / 2.0)
        idx += 1
    return tuple(int(x) for x in sizes)


def guess_chunks(shape: Tuple[int, ...], typesize: int) -> Tuple[int, ...]:
    """
    Guess an appropriate chunk layout for an array, given its shape and
    the size of each element in bytes.  Will allocate chunks only as large
    as MAX_SIZE.  Chunks are generally close to some power-of-2 fraction of
    each axis, slightly favoring bigger values for the last index.
    Undocumented and subject to change without warning.
    """

    # require chunks to have non-zero length for all dimensions
    chunks = np.maximum(np.array(shape, dtype='=f8'), 1)

    # Determine the optimal chunk size in bytes using a PyTables expression.
    # This is kept as a float.
    dset_size = np.prod(chunks)*typesize
    target_size = CHUNK_BASE * (2**np.log10(dset_size/(1024.*1024)))

    if target_size > CHUNK_MAX:
        target_size = CHUNK_MAX
    elif target_size < CHUNK_MIN:
        target_size = CHUNK_MIN

    return _halve_until(chunks, typesize, target_size)


def guess_blocks(chunks: Tuple[int, ...], typesize: int) -> Tuple[int, ...]:
    """Split a chunk into blocks of roughly BLOCK_TARGET bytes."""
    blocks = np.maximum(np.array(chunks, dtype='=f8'), 1)
    return _halve_until(blocks, typesize, BLOCK_TARGET)


def normalize_partition(part: Any, outer: Tuple[int, ...], name: str) -> Tuple[int, ...]:
    """Normalize a `chunks` or `blocks` argument against the `outer` shape it
    partitions. Entries of None or -1 take the outer extent."""

    # handle 1D convenience form
    if isinstance(part, numbers.Integral):
        part = tuple(int(part) for _ in outer)

    part = tuple(part)

    # handle bad dimensionality
    if len(part) != len(outer):
        raise InvalidArgumentError(
            '{} has {} dimensions, expected {}'.format(name, len(part), len(outer)))

    # handle None or -1
    part = tuple(s if c is None or c == -1 else int(c)
                 for s, c in zip(outer, part))

    return part


def normalize_itemsize(itemsize) -> int:
    try:
        itemsize = int(itemsize)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError('itemsize must be an integer, got {!r}'.format(itemsize)) from e
    if itemsize < 1 or itemsize > MAX_ITEMSIZE:
        raise InvalidArgumentError(
            'unsupported itemsize {}; must be between 1 and {}'.format(itemsize, MAX_ITEMSIZE))
    return itemsize


def itemsize_dtype(itemsize: int) -> np.dtype:
    """The numpy dtype used to expose items of the given width."""
    if itemsize in (1, 2, 4, 8):
        return np.dtype('<u%d' % itemsize)
    return np.dtype('V%d' % itemsize)


def normalize_fill_value(fill_value, itemsize: int) -> Optional[bytes]:
    """Convert a fill value into the byte pattern of one item.

    Bytes-like values must have exactly `itemsize` bytes. Numbers are encoded
    as little-endian integers (or floats for widths 4 and 8 when given a
    float), matching the default view dtype."""

    if fill_value is None:
        return None

    if isinstance(fill_value, (bytes, bytearray, memoryview)):
        pattern = bytes(fill_value)

    elif isinstance(fill_value, np.generic) or isinstance(fill_value, np.ndarray):
        pattern = np.asarray(fill_value).tobytes()

    elif isinstance(fill_value, numbers.Integral):
        fill_value = int(fill_value)
        try:
            pattern = fill_value.to_bytes(itemsize, 'little', signed=fill_value < 0)
        except OverflowError as e:
            raise InvalidArgumentError(
                'fill_value {!r} does not fit in {} bytes'.format(fill_value, itemsize)) from e

    elif isinstance(fill_value, numbers.Real) and itemsize in (4, 8):
        pattern = np.array(fill_value, dtype='<f%d' % itemsize).tobytes()

    else:
        raise InvalidArgumentError(
            'fill_value {!r} is not valid for itemsize {}'.format(fill_value, itemsize))

    if len(pattern) != itemsize:
        raise InvalidArgumentError(
            'fill_value has {} bytes, expected {}'.format(len(pattern), itemsize))

    return pattern


def normalize_resize_args(old_shape, *args):

    # normalize new shape argument
    if len(args) == 1:
        new_shape = args[0]
    else:
        new_shape = args
    if isinstance(new_shape, numbers.Integral):
        new_shape = (new_shape,)
    else:
        new_shape = tuple(new_shape)
    if len(new_shape) != len(old_shape):
        raise InvalidArgumentError('new shape must have same number of dimensions')

    # handle None in new_shape
    new_shape = tuple(s if n is None else int(n)
                      for s, n in zip(old_shape, new_shape))
    if any(s < 0 for s in new_shape):
        raise InvalidArgumentError('negative extent in shape {!r}'.format(new_shape))

    return new_shape


def normalize_coords(coords, ndim: int, name: str) -> Tuple[int, ...]:
    if isinstance(coords, numbers.Integral):
        coords = (coords,)
    coords = tuple(int(c) for c in coords)
    if len(coords) != ndim:
        raise InvalidArgumentError(
            '{} has {} dimensions, expected {}'.format(name, len(coords), ndim))
    return coords


def ensure_byte_view(buf, writeable=False) -> np.ndarray:
    """View any contiguous buffer as a flat uint8 array without copying."""
    try:
        arr = ensure_contiguous_ndarray_like(buf)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError('expected a contiguous buffer, got {!r}'.format(type(buf))) from e
    arr = arr.reshape(-1).view(np.uint8)
    if writeable and not arr.flags.writeable:
        raise InvalidArgumentError('destination buffer is read-only')
    return arr


def human_readable_size(size) -> str:
    if size < 2**10:
        return '%s' % size
    elif size < 2**20:
        return '%.1fK' % (size / float(2**10))
    elif size < 2**30:
        return '%.1fM' % (size / float(2**20))
    elif size < 2**40:
        return '%.1fG' % (size / float(2**30))
    elif size < 2**50:
        return '%.1fT' % (size / float(2**40))
    else:
        return '%.1fP' % (size / float(2**50))


def info_text_report(items) -> str:
    keys = [k for k, v in items]
    max_key_len = max(len(k) for k in keys)
    report = ''
    for k, v in items:
        wrapper = TextWrapper(width=80,
                              initial_indent=k.ljust(max_key_len) + ' : ',
                              subsequent_indent=' '*max_key_len + ' : ')
        text = wrapper.fill(str(v))
        report += text + '\n'
    return report


class InfoReporter(object):

    def __init__(self, obj):
        self.obj = obj

    def __repr__(self):
        items = self.obj.info_items()
        return info_text_report(items)


class NoLock(object):
    """A lock that doesn't lock."""

    def __enter__(self):
        pass

    def __exit__(self, *args):
        pass


nolock = NoLock()


def retry_call(callabl: Callable,
               args=None,
               kwargs=None,
               exceptions: Tuple[Any, ...] = (),
               retries: int = 10,
               wait: float = 0.1) -> Any:
    """
    Make several attempts to invoke the callable. If one of the given exceptions
    is raised, wait the given period of time and retry up to the given number of
    retries.
    """

    if args is None:
        args = ()
    if kwargs is None:
        kwargs = {}

    for attempt in range(1, retries+1):
        try:
            return callabl(*args, **kwargs)
        except exceptions:
            if attempt < retries:
                time.sleep(wait)
            else:
                raise
