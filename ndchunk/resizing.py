"""Growing and shrinking arrays without rewriting their chunks.

Chunks are keyed by their linear index in the chunk grid, so a change of the
grid moves stored chunks to new keys and drops those falling outside the new
grid. New data is written through the slice engine. Both operations are all
or nothing: on failure the shape, the chunk keys and the chunk contents are
restored.
"""
import logging

from ndchunk.coords import chunk_count, padded_shape, prod, ravel_index, unravel_index
from ndchunk.errors import InvalidArgumentError
from ndchunk.slicing import ChunkTransaction, fill_region, write_region
from ndchunk.util import ensure_byte_view, normalize_resize_args

logger = logging.getLogger(__name__)


def regrid_mapping(indices, old_grid, new_grid):
    """Split stored chunk indices between those that move and those that fall
    outside the new grid.

    Returns
    -------
    moves : dict
        ``{old_index: new_index}`` for chunks whose linear index changes.
    dropped : list
        Indices of chunks with no place in the new grid.
    """
    moves = {}
    dropped = []
    for index in indices:
        coords = unravel_index(index, old_grid)
        if any(c >= n for c, n in zip(coords, new_grid)):
            dropped.append(index)
            continue
        new_index = ravel_index(coords, new_grid)
        if new_index != index:
            moves[index] = new_index
    return moves, dropped


class Regrid:
    """Re-key the stored chunks of `store` for a change of chunk grid."""

    def __init__(self, store, old_grid, new_grid):
        self.store = store
        self.moves, self.dropped = regrid_mapping(store.chunk_indices(), old_grid, new_grid)
        self._saved = {}
        self._deleted = False
        self._moved = False

    def apply(self):
        if self.dropped:
            # dropped chunks are kept around until the operation is committed
            self._saved = {i: self.store.get_chunk(i) for i in self.dropped}
            self.store.delete_chunks(self.dropped)
        self._deleted = True
        if self.moves:
            self.store.reindex(self.moves)
            logger.debug("moved %d chunks to a new grid", len(self.moves))
        self._moved = True

    def undo(self):
        if self._moved and self.moves:
            self.store.reindex({new: old for old, new in self.moves.items()})
        self._moved = False
        if self._deleted and self._saved:
            self.store.put_chunks({i: c for i, c in self._saved.items() if c is not None})
        self._deleted = False


def _check_growable(chunks, old_shape, new_shape):
    for i, (c, old, new) in enumerate(zip(chunks, old_shape, new_shape)):
        if new > old and c == 0:
            raise InvalidArgumentError(
                f"cannot grow dimension {i}: its chunk length is zero")


def _undo(array, old_shape, transaction, regrid):
    array._shape = old_shape
    for step in (transaction.rollback, regrid.undo):
        try:
            step()
        except Exception:
            logger.error("failed to restore array state", exc_info=True)


def exposed_regions(old_shape, new_shape, chunks):
    """Ranges that a resize from `old_shape` to `new_shape` exposes inside
    chunks that already existed.

    Every item beyond the old shape along some dimension is attributed to the
    first such dimension, so the ranges are disjoint.
    """
    ndim = len(old_shape)
    padded = padded_shape(old_shape, chunks)
    for i in range(ndim):
        if new_shape[i] <= old_shape[i]:
            continue
        boundary = min(new_shape[i], padded[i])
        if boundary <= old_shape[i]:
            continue
        start = [0] * ndim
        stop = []
        for j in range(ndim):
            if j < i:
                stop.append(min(old_shape[j], new_shape[j]))
            elif j == i:
                start[j] = old_shape[j]
                stop.append(boundary)
            else:
                stop.append(min(new_shape[j], padded[j]))
        if all(lo < hi for lo, hi in zip(start, stop)):
            yield tuple(start), tuple(stop)


def resize(array, *args):
    """Change the shape of `array`, growing or shrinking any dimensions.

    Chunks outside the new chunk grid are deleted. Items that become visible
    again after growing read as the fill value.
    """
    old_shape = array._shape
    new_shape = normalize_resize_args(old_shape, *args)
    _check_growable(array.chunks, old_shape, new_shape)
    if new_shape == old_shape:
        return new_shape

    store = array.chunk_store
    regrid = Regrid(store, chunk_count(old_shape, array.chunks),
                    chunk_count(new_shape, array.chunks))
    transaction = ChunkTransaction(store)
    try:
        regrid.apply()
        array._shape = new_shape
        for start, stop in exposed_regions(old_shape, new_shape, array.chunks):
            fill_region(array, start, stop, transaction=transaction)
        array._flush_metadata_nosync()
    except Exception:
        logger.debug("resize from %s to %s failed", old_shape, new_shape)
        _undo(array, old_shape, transaction, regrid)
        raise

    logger.debug("resized array from %s to %s", old_shape, new_shape)
    return new_shape


def append_buffer(array, buffer, axis=0, nbytes=None):
    """Append the items of a dense row-major buffer along `axis`.

    The buffer must hold a whole number of slabs, a slab being the items of a
    unit-thick cross section of the array perpendicular to `axis`.

    Returns
    -------
    new_shape : tuple
    """
    ndim = array.ndim
    try:
        axis = int(axis)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"axis must be an integer, got {axis!r}") from e
    if not 0 <= axis < ndim:
        raise InvalidArgumentError(f"axis {axis} is out of range for {ndim} dimensions")

    data = ensure_byte_view(buffer)
    nbytes = data.nbytes if nbytes is None else int(nbytes)
    if not 0 <= nbytes <= data.nbytes:
        raise InvalidArgumentError(
            f"nbytes {nbytes} is out of range for a buffer of {data.nbytes} bytes")

    old_shape = array._shape
    itemsize = array.itemsize
    slab = itemsize * prod(s for i, s in enumerate(old_shape) if i != axis)
    if nbytes == 0:
        return old_shape
    if slab == 0 or nbytes % slab:
        raise InvalidArgumentError(
            f"buffer of {nbytes} bytes is not a whole number of {slab} byte slabs "
            f"along axis {axis}")
    extent = nbytes // slab

    new_shape = tuple(s + extent if i == axis else s for i, s in enumerate(old_shape))
    _check_growable(array.chunks, old_shape, new_shape)
    value_shape = tuple(extent if i == axis else s for i, s in enumerate(old_shape))
    src = data[:nbytes].reshape(value_shape + (itemsize,))
    start = tuple(old_shape[axis] if i == axis else 0 for i in range(ndim))

    store = array.chunk_store
    regrid = Regrid(store, chunk_count(old_shape, array.chunks),
                    chunk_count(new_shape, array.chunks))
    transaction = ChunkTransaction(store)
    try:
        regrid.apply()
        array._shape = new_shape
        write_region(array, src, start, new_shape, transaction=transaction)
        array._flush_metadata_nosync()
    except Exception:
        logger.debug("append of %d bytes along axis %d failed", nbytes, axis)
        _undo(array, old_shape, transaction, regrid)
        raise

    logger.debug("appended %d items along axis %d, shape is now %s", extent, axis, new_shape)
    return new_shape
