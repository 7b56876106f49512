"""Reading and writing hyperrectangular slices through partial block
decompression.

A slice request ``[start, stop)`` is mapped onto the chunks it overlaps and,
inside each chunk, onto the blocks it overlaps. Only those blocks are decoded;
writes recompress only the blocks they patch and keep the compressed bytes of
every other block of the chunk as they are.

Chunks absent from the store are uniform: every item equals the array fill
pattern. Reads synthesize them without touching any codec; writes expand
them into concrete blocks first.
"""
import logging
from functools import partial
from typing import Optional

import numpy as np

from ndchunk.chunk import Chunk
from ndchunk.coords import (
    as_slices,
    block_count,
    block_extent,
    chunk_count,
    chunk_extent,
    chunk_origin,
    grid_range,
    intersect,
    is_empty,
    iter_grid,
    prod,
    range_shape,
    ravel_index,
    shift,
)
from ndchunk.errors import InvalidArgumentError
from ndchunk.sync import run_tasks
from ndchunk.util import ensure_byte_view, normalize_coords

logger = logging.getLogger(__name__)


class ChunkLayout:
    """Geometry shared by every chunk of an array of a given shape."""

    def __init__(self, shape, chunks, blocks, itemsize):
        self.shape = shape
        self.chunks = chunks
        self.blocks = blocks
        self.itemsize = itemsize
        self.cdata_shape = chunk_count(shape, chunks)
        self.block_grid = block_count(chunks, blocks)
        self.nblocks = prod(self.block_grid)
        self.block_shape = tuple(blocks) + (itemsize,)
        self.block_nbytes = prod(blocks) * itemsize

    def chunk_index(self, chunk_coords) -> int:
        return ravel_index(chunk_coords, self.cdata_shape)

    def block_index(self, block_coords) -> int:
        return ravel_index(block_coords, self.block_grid)

    def chunk_regions(self, start, stop):
        """Yield ``(chunk_coords, chunk_origin, lo, hi)`` for every chunk
        overlapping the non-empty range, with ``[lo, hi)`` the overlap in
        chunk-local coordinates."""
        clo, chi = grid_range(start, stop, self.chunks)
        for chunk_coords in iter_grid(clo, chi):
            origin = chunk_origin(chunk_coords, self.chunks)
            extent = chunk_extent(chunk_coords, self.shape, self.chunks)
            bounds = (origin, tuple(o + e for o, e in zip(origin, extent)))
            overlap = intersect((start, stop), bounds)
            if overlap is None:
                continue
            yield chunk_coords, origin, shift(overlap[0], origin), shift(overlap[1], origin)

    def block_regions(self, chunk_coords, lo, hi):
        """Yield ``(block_index, block_origin, blo, bhi, whole)`` for every block
        overlapping the chunk-local range ``[lo, hi)``; ``[blo, bhi)`` is the
        overlap relative to the block origin and `whole` tells whether it covers
        every valid item of the block."""
        extent = chunk_extent(chunk_coords, self.shape, self.chunks)
        glo, ghi = grid_range(lo, hi, self.blocks)
        for block_coords in iter_grid(glo, ghi):
            origin = chunk_origin(block_coords, self.blocks)
            valid = block_extent(block_coords, extent, self.blocks)
            bounds = (origin, tuple(o + v for o, v in zip(origin, valid)))
            overlap = intersect((lo, hi), bounds)
            if overlap is None:
                continue
            whole = overlap == bounds
            yield (self.block_index(block_coords), origin,
                   shift(overlap[0], origin), shift(overlap[1], origin), whole)


def layout_of(array) -> ChunkLayout:
    return ChunkLayout(array._shape, array.chunks, array.blocks, array.itemsize)


def check_range(start, stop, shape):
    """Normalize a ``[start, stop)`` request and check it lies inside `shape`."""
    ndim = len(shape)
    start = normalize_coords(start, ndim, "start")
    stop = normalize_coords(stop, ndim, "stop")
    for lo, hi, s in zip(start, stop, shape):
        if not 0 <= lo <= hi <= s:
            raise InvalidArgumentError(
                f"range [{start}, {stop}) is out of bounds for shape {shape}")
    return start, stop


def check_buffer_shape(buffer_shape, start, stop):
    if buffer_shape is None:
        return range_shape(start, stop)
    buffer_shape = normalize_coords(buffer_shape, len(start), "buffer shape")
    if any(b < n for b, n in zip(buffer_shape, range_shape(start, stop))):
        raise InvalidArgumentError(
            f"buffer shape {buffer_shape} cannot hold range [{start}, {stop})")
    return buffer_shape


def item_view(buf, shape, itemsize, writeable=False) -> np.ndarray:
    """View a dense row-major buffer of items as a uint8 array of
    ``shape + (itemsize,)``."""
    flat = ensure_byte_view(buf, writeable=writeable)
    nbytes = prod(shape) * itemsize
    if flat.nbytes < nbytes:
        raise InvalidArgumentError(
            f"buffer has {flat.nbytes} bytes, {nbytes} needed for shape {tuple(shape)}")
    return flat[:nbytes].reshape(tuple(shape) + (itemsize,))


def _read_chunk(array, layout, chunk_coords, origin, lo, hi, dest, start):
    to_dest = shift(origin, start)
    cdata = array.chunk_store.get_chunk(layout.chunk_index(chunk_coords))
    if cdata is None:
        dlo = tuple(a + b for a, b in zip(lo, to_dest))
        dhi = tuple(a + b for a, b in zip(hi, to_dest))
        dest[as_slices(dlo, dhi)] = array.fill_item
        return

    chunk = Chunk.frombytes(cdata, layout.nblocks)
    for bindex, borigin, blo, bhi, _ in layout.block_regions(chunk_coords, lo, hi):
        raw = array.codec.decompress(chunk[bindex], layout.block_nbytes)
        raw = raw.reshape(layout.block_shape)
        offset = tuple(b + t for b, t in zip(borigin, to_dest))
        dlo = tuple(a + b for a, b in zip(blo, offset))
        dhi = tuple(a + b for a, b in zip(bhi, offset))
        dest[as_slices(dlo, dhi)] = raw[as_slices(blo, bhi)]


def read_region(array, dest, start, stop):
    """Copy the items of ``[start, stop)`` into `dest`, a uint8 view with a
    trailing item axis whose origin corresponds to `start`."""
    if is_empty(start, stop):
        return
    layout = layout_of(array)
    tasks = [
        partial(_read_chunk, array, layout, chunk_coords, origin, lo, hi, dest, start)
        for chunk_coords, origin, lo, hi in layout.chunk_regions(start, stop)
    ]
    run_tasks(tasks)


def get_slice_buffer(array, start, stop, out, out_shape=None):
    """Read the items of ``[start, stop)`` into the buffer `out`.

    Parameters
    ----------
    array : ndchunk.core.Array
    start, stop : sequence of ints
        Half-open range, one entry per dimension.
    out : writeable buffer
        Destination, addressed as a dense row-major buffer of `out_shape`
        items. The range is written at the origin of `out`; bytes outside it
        are left untouched.
    out_shape : sequence of ints, optional
        Shape of `out` in items; defaults to ``stop - start``.

    Returns
    -------
    out
    """
    start, stop = check_range(start, stop, array._shape)
    out_shape = check_buffer_shape(out_shape, start, stop)
    dest = item_view(out, out_shape, array.itemsize, writeable=True)
    read_region(array, dest, start, stop)
    return out


class ChunkTransaction:
    """Chunk replacements applied as one batch, with the previous contents
    remembered so that the batch can be undone."""

    def __init__(self, store):
        self.store = store
        self._undo = {}

    def record(self, index, cdata):
        # keep the state from before the first change
        self._undo.setdefault(index, cdata)

    def commit(self, updates):
        if not updates:
            return
        try:
            self.store.put_chunks(updates)
        except Exception:
            self.rollback()
            raise

    def rollback(self):
        if not self._undo:
            return
        restore = {i: c for i, c in self._undo.items() if c is not None}
        created = [i for i, c in self._undo.items() if c is None]
        try:
            if restore:
                self.store.put_chunks(restore)
            if created:
                self.store.delete_chunks(created)
        except Exception:
            logger.error("failed to roll back %d chunks", len(self._undo), exc_info=True)
        else:
            logger.debug("rolled back %d chunks", len(self._undo))
        self._undo = {}


def _write_chunk(array, layout, chunk_coords, origin, lo, hi, src, start, only_stored):
    index = layout.chunk_index(chunk_coords)
    old = array.chunk_store.get_chunk(index)
    fill_block = None
    if old is None:
        if only_stored:
            return None
        # expand the uniform chunk, all its blocks share one encoding
        fill_block = array.fill_block(layout)
        chunk = Chunk.uniform(array.codec.compress(fill_block), layout.nblocks)
    else:
        chunk = Chunk.frombytes(old, layout.nblocks)

    to_src = shift(origin, start)
    for bindex, borigin, blo, bhi, whole in layout.block_regions(chunk_coords, lo, hi):
        if fill_block is not None or whole:
            raw = array.fill_block(layout) if fill_block is None else fill_block.copy()
        else:
            raw = array.codec.decompress(chunk[bindex], layout.block_nbytes)
            raw = raw.reshape(layout.block_shape)
        offset = tuple(b + t for b, t in zip(borigin, to_src))
        slo = tuple(a + b for a, b in zip(blo, offset))
        shi = tuple(a + b for a, b in zip(bhi, offset))
        raw[as_slices(blo, bhi)] = src[as_slices(slo, shi)]
        chunk[bindex] = array.codec.compress(raw)

    return index, old, chunk.tobytes()


def write_region(array, src, start, stop, transaction: Optional[ChunkTransaction] = None,
                 only_stored=False):
    """Patch ``[start, stop)`` with the items of `src`, a uint8 view with a
    trailing item axis whose origin corresponds to `start`.

    All touched chunks are encoded first and then stored in one batch through
    `transaction`; if storing fails the previous chunks are restored. With
    `only_stored`, uniform chunks are left alone.
    """
    if transaction is None:
        transaction = ChunkTransaction(array.chunk_store)
    if is_empty(start, stop):
        return transaction
    layout = layout_of(array)
    tasks = [
        partial(_write_chunk, array, layout, chunk_coords, origin, lo, hi, src, start,
                only_stored)
        for chunk_coords, origin, lo, hi in layout.chunk_regions(start, stop)
    ]
    updates = {}
    for result in run_tasks(tasks):
        if result is None:
            continue
        index, old, cdata = result
        transaction.record(index, old)
        updates[index] = cdata
    transaction.commit(updates)
    return transaction


def set_slice_buffer(array, value, value_shape, start, stop, transaction=None):
    """Write the items of the buffer `value` into ``[start, stop)``.

    Parameters
    ----------
    array : ndchunk.core.Array
    value : buffer
        Source, addressed as a dense row-major buffer of `value_shape` items;
        the range is read from its origin.
    value_shape : sequence of ints
        Shape of `value` in items; None means ``stop - start``.
    start, stop : sequence of ints
        Half-open range, one entry per dimension, inside the array shape.
    transaction : ChunkTransaction, optional
        Collects the previous chunk contents so that callers can undo the
        write as part of a larger operation.

    Returns
    -------
    transaction : ChunkTransaction
    """
    start, stop = check_range(start, stop, array._shape)
    value_shape = check_buffer_shape(value_shape, start, stop)
    src = item_view(value, value_shape, array.itemsize)
    return write_region(array, src, start, stop, transaction=transaction)


def fill_region(array, start, stop, transaction=None, only_stored=True):
    """Reset ``[start, stop)`` to the fill pattern."""
    src = np.broadcast_to(array.fill_item, range_shape(start, stop) + (array.itemsize,))
    return write_region(array, src, start, stop, transaction=transaction,
                        only_stored=only_stored)
