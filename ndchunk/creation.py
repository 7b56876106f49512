import logging
import os
from typing import Optional, Tuple, Union

import numpy as np

from ndchunk.codec import compressor_config, normalize_compressor
from ndchunk.config import config
from ndchunk.coords import chunk_count, chunk_origin, iter_grid, unravel_index
from ndchunk.core import Array
from ndchunk.defaults import MAX_DIM
from ndchunk.errors import ArrayNotFoundError, ContainsArrayError, InvalidArgumentError
from ndchunk.meta import encode_array_metadata
from ndchunk.storage import DirectoryStore, FrameStore, open_store, remove
from ndchunk.util import (
    ensure_byte_view,
    guess_blocks,
    guess_chunks,
    normalize_fill_value,
    normalize_itemsize,
    normalize_partition,
    normalize_shape,
)

logger = logging.getLogger(__name__)


def validate(shape, chunks, blocks, itemsize) -> None:
    """Check that a partitioning of an array is well formed.

    Chunk and block lengths must be positive, except along dimensions of
    length zero where zero is accepted. Blocks may not be larger than
    chunks, while chunks may be larger than the array itself.

    Raises
    ------
    InvalidArgumentError
    """
    ndim = len(shape)
    if ndim > MAX_DIM:
        raise InvalidArgumentError(f"too many dimensions; expected at most {MAX_DIM}, got {ndim}")
    if len(chunks) != ndim or len(blocks) != ndim:
        raise InvalidArgumentError(
            f"shape, chunks and blocks must have the same number of dimensions, got "
            f"{shape}, {chunks} and {blocks}")
    normalize_itemsize(itemsize)
    for i, (s, c, b) in enumerate(zip(shape, chunks, blocks)):
        if s < 0 or c < 0 or b < 0:
            raise InvalidArgumentError(f"negative length in dimension {i}")
        if s > 0 and (c == 0 or b == 0):
            raise InvalidArgumentError(
                f"chunk and block lengths must be positive in dimension {i}, "
                f"got {c} and {b}")
        if b > c:
            raise InvalidArgumentError(
                f"block length {b} exceeds chunk length {c} in dimension {i}")


def _normalize_layout(shape, itemsize, chunks, blocks):
    if chunks is None or chunks is True:
        chunks = guess_chunks(shape, itemsize)
    chunks = normalize_partition(chunks, shape, "chunks")
    if blocks is None or blocks is True:
        blocks = guess_blocks(chunks, itemsize)
    blocks = normalize_partition(blocks, chunks, "blocks")
    return chunks, blocks


def create(
    shape: Union[int, Tuple[int, ...]],
    itemsize: int = 8,
    chunks=None,
    blocks=None,
    fill_value=0,
    compressor="default",
    path: Optional[Union[str, os.PathLike]] = None,
    contiguous: Optional[bool] = None,
    overwrite: bool = False,
    synchronizer=None,
    read_only: bool = False,
    cache_metadata: bool = True,
):
    """Create an array.

    Parameters
    ----------
    shape : int or tuple of ints
        Array shape.
    itemsize : int, optional
        Size in bytes of each item, between 1 and 255.
    chunks : int or tuple of ints, optional
        Chunk shape. If None, will be guessed from `shape` and `itemsize`.
        If an int, the chunk size in each dimension will be given by the value
        of `chunks`. Entries of None or -1 span the whole dimension.
    blocks : int or tuple of ints, optional
        Block shape, the unit of compression inside a chunk. If None, will be
        guessed from `chunks` and `itemsize`.
    fill_value : bytes, int or float, optional
        Value of uninitialized portions of the array. None leaves it
        unspecified; such arrays read as zeros.
    compressor : Codec, optional
        Primary compressor; 'default' uses the ``codec`` configuration entry.
    path : string, optional
        Location of persistent storage: a single file for the contiguous
        layout, a directory for the sparse one. If None, the array is held in
        memory.
    contiguous : bool, optional
        If True, all chunks are packed in a single container. Defaults to the
        ``array.contiguous`` configuration entry.
    overwrite : bool, optional
        If True, delete any pre-existing data at `path` before creating the
        array.
    synchronizer : object, optional
        Array synchronizer.
    read_only : bool, optional
        True if array should be protected against modification.
    cache_metadata : bool, optional
        If True (default), array configuration metadata will be cached for the
        lifetime of the object. If False, array metadata will be reloaded
        prior to all data access and modification operations.

    Returns
    -------
    z : ndchunk.core.Array

    Examples
    --------

    Create an array with default settings::

        >>> import ndchunk
        >>> z = ndchunk.create((10000, 10000), chunks=(1000, 1000))
        >>> z
        <ndchunk.core.Array (10000, 10000) uint64>

    Create a sparse on-disk array of 3-byte items with a custom compressor::

        >>> from numcodecs import Blosc
        >>> compressor = Blosc(cname='zstd', clevel=1, shuffle=Blosc.BITSHUFFLE)
        >>> z = ndchunk.create((100, 100), itemsize=3, chunks=(50, 50), blocks=(10, 10),
        ...                    compressor=compressor, path='data/example',
        ...                    contiguous=False, overwrite=True)

    """
    shape = normalize_shape(shape)
    itemsize = normalize_itemsize(itemsize)
    chunks, blocks = _normalize_layout(shape, itemsize, chunks, blocks)
    validate(shape, chunks, blocks, itemsize)
    fill_value = normalize_fill_value(fill_value, itemsize)
    compressor = normalize_compressor(compressor)
    if contiguous is None:
        contiguous = config.get("array.contiguous", True)

    if path is not None:
        path = os.fspath(path)
        if os.path.lexists(path):
            if not overwrite:
                raise ContainsArrayError(path)
            remove(path)

    meta = dict(
        shape=shape,
        chunks=chunks,
        blocks=blocks,
        itemsize=itemsize,
        fill_value=fill_value,
        compressor=compressor_config(compressor),
    )
    store = open_store(path, contiguous=contiguous, mode="w")
    try:
        store.store_metadata(encode_array_metadata(meta))
    except Exception:
        store.discard()
        raise

    logger.debug("created array of shape %s, chunks %s, blocks %s in %r",
                 shape, chunks, blocks, store)
    return Array(store, read_only=read_only, synchronizer=synchronizer,
                 cache_metadata=cache_metadata)


def empty(shape, **kwargs):
    """Create an empty array. Uninitialized items are not meant to be read;
    they read as zeros.

    For parameter definitions see :func:`ndchunk.creation.create`.

    """
    return create(shape=shape, fill_value=None, **kwargs)


def zeros(shape, **kwargs):
    """Create an array, with zero being used as the default value for
    uninitialized portions of the array.

    For parameter definitions see :func:`ndchunk.creation.create`.

    Examples
    --------
    >>> import ndchunk
    >>> z = ndchunk.zeros((10000, 10000), itemsize=2, chunks=(1000, 1000))
    >>> z
    <ndchunk.core.Array (10000, 10000) uint16>
    >>> z[:2, :2]
    array([[0, 0],
           [0, 0]], dtype=uint16)

    """

    return create(shape=shape, fill_value=0, **kwargs)


def ones(shape, **kwargs):
    """Create an array, with one being used as the default value for
    uninitialized portions of the array.

    For parameter definitions see :func:`ndchunk.creation.create`.

    """

    return create(shape=shape, fill_value=1, **kwargs)


def full(shape, fill_value, **kwargs):
    """Create an array, with `fill_value` being used as the default value for
    uninitialized portions of the array.

    No chunk is stored until an item is written, whatever the size of the
    array.

    For parameter definitions see :func:`ndchunk.creation.create`.

    Examples
    --------
    >>> import ndchunk
    >>> z = ndchunk.full((10000, 10000), itemsize=4, chunks=(1000, 1000), fill_value=42)
    >>> z[:2, :2]
    array([[42, 42],
           [42, 42]], dtype=uint32)
    >>> z.nchunks_initialized
    0

    """

    return create(shape=shape, fill_value=fill_value, **kwargs)


def from_buffer(buffer, shape, itemsize=8, **kwargs):
    """Create an array holding the items of a dense row-major buffer.

    The first ``prod(shape) * itemsize`` bytes of `buffer` are used. For
    other parameter definitions see :func:`ndchunk.creation.create`.

    """
    shape = normalize_shape(shape)
    itemsize = normalize_itemsize(itemsize)
    data = ensure_byte_view(buffer)
    nbytes = int(np.prod(shape, dtype=np.int64)) * itemsize
    if data.nbytes < nbytes:
        raise InvalidArgumentError(
            f"buffer has {data.nbytes} bytes, {nbytes} needed for shape {shape}")

    read_only = kwargs.pop("read_only", False)
    kwargs.setdefault("fill_value", None)
    z = create(shape, itemsize=itemsize, **kwargs)
    try:
        z.set_slice_buffer(data, (0,) * len(shape), shape)
    except Exception:
        z.store.discard()
        raise

    # set read_only property afterwards
    z.read_only = read_only

    return z


def array(data, **kwargs):
    """Create an array filled with `data`.

    The `data` argument should be a NumPy array or array-like object; the
    item size is taken from its dtype. For other parameter definitions see
    :func:`ndchunk.creation.create`.

    Examples
    --------
    >>> import numpy as np
    >>> import ndchunk
    >>> a = np.arange(1000000, dtype='u4').reshape(1000, 1000)
    >>> z = ndchunk.array(a, chunks=(100, 100), blocks=(20, 20))
    >>> z
    <ndchunk.core.Array (1000, 1000) uint32>

    """

    # ensure data is array-like
    if not hasattr(data, "shape") or not hasattr(data, "dtype"):
        data = np.asanyarray(data)
    if data.dtype.hasobject:
        raise InvalidArgumentError("arrays of Python objects cannot be stored")

    return from_buffer(np.ascontiguousarray(data), data.shape,
                       itemsize=data.dtype.itemsize, **kwargs)


def open_array(path, mode="a", synchronizer=None, cache_metadata=None):
    """Open a persistent array.

    Parameters
    ----------
    path : string
        A single file holds a contiguous array, a directory a sparse one.
    mode : {'r', 'r+', 'a'}, optional
        Persistence mode: 'r' means read only, 'r+' and 'a' mean read/write.
        The array must exist.
    synchronizer : object, optional
        Array synchronizer.
    cache_metadata : bool, optional
        If True, array configuration metadata will be cached for the lifetime
        of the object. If False, array metadata will be reloaded prior to all
        data access and modification operations. Defaults to False when a
        synchronizer is given, so that handles sharing it see each other's
        resizes and appends, and True otherwise.

    Returns
    -------
    z : ndchunk.core.Array

    Examples
    --------
    >>> import ndchunk
    >>> z1 = ndchunk.zeros((100, 100), chunks=(10, 10), path='data/example.frame',
    ...                    overwrite=True)
    >>> z1[:] = 42
    >>> z1.free()
    >>> z2 = ndchunk.open_array('data/example.frame', mode='r')
    >>> z2[0, 0]
    np.uint64(42)

    """
    if mode not in ("r", "r+", "a"):
        raise InvalidArgumentError(f"invalid mode; expected one of 'r', 'r+', 'a', got {mode!r}")

    path = os.fspath(path)
    if not os.path.exists(path):
        raise ArrayNotFoundError(path)

    if cache_metadata is None:
        cache_metadata = synchronizer is None

    if os.path.isdir(path):
        store = DirectoryStore(path)
    else:
        store = FrameStore(path, mode="r" if mode == "r" else "r+")

    try:
        z = Array(store, read_only=(mode == "r"), synchronizer=synchronizer,
                  cache_metadata=cache_metadata)
    except Exception:
        store.close()
        raise

    logger.debug("opened array %r", z)
    return z


def copy(source, chunks=None, blocks=None, **kwargs):
    """Copy `source` into a new array, possibly with a different partitioning,
    layout or location.

    Only chunks stored in `source` are read; the rest already equals the
    fill value of the new array. For other parameter definitions see
    :func:`ndchunk.creation.create`.

    """
    if chunks is None:
        chunks = source.chunks
        if blocks is None:
            blocks = source.blocks
    kwargs.setdefault("itemsize", source.itemsize)
    kwargs.setdefault("fill_value", source.fill_value)
    kwargs.setdefault("compressor", source.compressor)
    read_only = kwargs.pop("read_only", False)

    dest = create(source.shape, chunks=chunks, blocks=blocks, **kwargs)
    if dest.itemsize != source.itemsize:
        dest.store.discard()
        raise InvalidArgumentError(
            f"cannot copy items of {source.itemsize} bytes into items of {dest.itemsize} bytes")

    grid = chunk_count(source.shape, source.chunks)
    if np.array_equal(dest.fill_item, source.fill_item):
        regions = [unravel_index(i, grid) for i in source.store.chunk_indices()]
    else:
        regions = list(iter_grid((0,) * len(grid), grid))

    try:
        for chunk_coords in regions:
            start = chunk_origin(chunk_coords, source.chunks)
            stop = tuple(min(o + c, s) for o, c, s in zip(start, source.chunks, source.shape))
            dest.set_slice_buffer(source.get_slice(start, stop), start, stop)
    except Exception:
        dest.store.discard()
        raise

    logger.debug("copied %d of %d chunks from %r", len(regions), source.nchunks, source)
    dest.read_only = read_only
    return dest
