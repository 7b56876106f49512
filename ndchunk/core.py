import logging

import numpy as np
from numcodecs.registry import get_codec

from ndchunk.codec import BlockCodec, compressor_config
from ndchunk.coords import chunk_count, prod, range_shape
from ndchunk.defaults import meta_key
from ndchunk.errors import ArrayNotFoundError, InvalidArgumentError, ReadOnlyError
from ndchunk.indexing import BasicSelection
from ndchunk.meta import decode_array_metadata, encode_array_metadata
from ndchunk.resizing import append_buffer, resize
from ndchunk.slicing import ChunkLayout, get_slice_buffer, read_region, set_slice_buffer
from ndchunk.storage import ChunkStore
from ndchunk.util import (
    InfoReporter,
    human_readable_size,
    itemsize_dtype,
    nolock,
    normalize_coords,
    normalize_fill_value,
)

__all__ = ["Array"]

logger = logging.getLogger(__name__)


# noinspection PyUnresolvedReferences
class Array:
    """Instantiate an array from an initialized chunk store.

    Parameters
    ----------
    store : ChunkStore
        Chunk store holding the array metadata, already initialized.
    read_only : bool, optional
        True if array should be protected against modification.
    synchronizer : object, optional
        Array synchronizer.
    cache_metadata : bool, optional
        If True (default), array configuration metadata will be cached for the
        lifetime of the object. If False, array metadata will be reloaded
        prior to all data access and modification operations, which is needed
        when several handles write to the same storage.

    Notes
    -----
    Without a synchronizer the caller is responsible for not reading an
    array while another thread or process writes to it.
    """

    def __init__(self, store: ChunkStore, read_only=False, synchronizer=None,
                 cache_metadata=True):
        # N.B., expect at this point store is fully initialized with all
        # configuration metadata fully specified and normalized
        self._store = store
        self._read_only = bool(read_only)
        self._synchronizer = synchronizer
        self._cache_metadata = cache_metadata

        # initialize metadata
        self._load_metadata()

    def _load_metadata(self):
        """(Re)load metadata from store."""
        if self._synchronizer is None:
            self._load_metadata_nosync()
        else:
            with self._synchronizer[meta_key]:
                self._load_metadata_nosync()

    def _load_metadata_nosync(self):
        meta_bytes = self._store.load_metadata()
        if meta_bytes is None:
            raise ArrayNotFoundError(self._store.path)

        # decode and store metadata as instance members
        meta = decode_array_metadata(meta_bytes)
        self._meta = meta
        self._shape = meta["shape"]
        self._chunks = meta["chunks"]
        self._blocks = meta["blocks"]
        self._itemsize = meta["itemsize"]
        self._fill_value = meta["fill_value"]

        # setup compressor
        compressor = meta.get("compressor", None)
        if compressor is None:
            self._compressor = None
        else:
            self._compressor = get_codec(compressor)
        self._codec = BlockCodec(self._compressor, self._itemsize)
        self._dtype = itemsize_dtype(self._itemsize)

    def _refresh_metadata(self):
        if self._cache_metadata:
            return
        if self._synchronizer is None:
            self._refresh_metadata_nosync()
        else:
            with self._synchronizer[meta_key]:
                self._refresh_metadata_nosync()

    def _refresh_metadata_nosync(self):
        if not self._cache_metadata:
            self._store.refresh()
            self._load_metadata_nosync()

    def _flush_metadata_nosync(self):
        meta = dict(
            shape=self._shape,
            chunks=self._chunks,
            blocks=self._blocks,
            itemsize=self._itemsize,
            fill_value=self._fill_value,
            compressor=compressor_config(self._compressor),
        )
        self._store.store_metadata(encode_array_metadata(meta))

    @property
    def store(self):
        """The ChunkStore providing the underlying storage for the array."""
        return self._store

    chunk_store = store

    @property
    def path(self):
        """Location of the persistent storage, None for in-memory arrays."""
        return self._store.path

    @property
    def contiguous(self):
        """True if all chunks are packed into a single container."""
        return self._store.contiguous

    @property
    def persistent(self):
        """True if the array is backed by a file or directory."""
        return self._store.persistent

    @property
    def read_only(self):
        """A boolean, True if modification operations are not permitted."""
        return self._read_only

    @read_only.setter
    def read_only(self, value):
        self._read_only = bool(value)

    @property
    def shape(self):
        """A tuple of integers describing the length of each dimension of
        the array."""
        self._refresh_metadata()
        return self._shape

    @shape.setter
    def shape(self, value):
        self.resize(value)

    @property
    def chunks(self):
        """A tuple of integers describing the length of each dimension of a
        chunk of the array."""
        return self._chunks

    @property
    def blocks(self):
        """A tuple of integers describing the length of each dimension of a
        block, the unit of compression inside a chunk."""
        return self._blocks

    @property
    def itemsize(self):
        """The size in bytes of each item in the array."""
        return self._itemsize

    @property
    def dtype(self):
        """The NumPy data type used to expose items: an unsigned integer for
        item sizes of 1, 2, 4 and 8 bytes, an opaque void type otherwise."""
        return self._dtype

    @property
    def compressor(self):
        """Primary compression codec."""
        return self._compressor

    @property
    def codec(self):
        return self._codec

    @property
    def fill_value(self):
        """Byte pattern of one item used for uninitialized portions of the
        array, None for arrays created empty."""
        return self._fill_value

    @property
    def synchronizer(self):
        """Object used to synchronize write access to the array."""
        return self._synchronizer

    @property
    def ndim(self):
        """Number of dimensions."""
        return len(self._shape)

    @property
    def size(self):
        """The total number of elements in the array."""
        return prod(self._shape)

    @property
    def nbytes(self):
        """The total number of bytes that would be required to store the
        array without compression."""
        return self.size * self._itemsize

    @property
    def nbytes_stored(self):
        """The total number of stored bytes of data for the array, including
        the metadata document."""
        meta_bytes = self._store.load_metadata() or b""
        return self._store.nbytes_stored + len(meta_bytes)

    @property
    def cdata_shape(self):
        """A tuple of integers describing the number of chunks along each
        dimension of the array."""
        return chunk_count(self._shape, self._chunks)

    @property
    def nchunks(self):
        """Total number of chunks."""
        return prod(self.cdata_shape)

    @property
    def nchunks_initialized(self):
        """The number of chunks that have been initialized with some data."""
        return self._store.nchunks_stored

    @property
    def nblocks(self):
        """Number of blocks in each chunk."""
        return ChunkLayout(self._shape, self._chunks, self._blocks, self._itemsize).nblocks

    @property
    def fill_item(self) -> np.ndarray:
        """The fill pattern as a uint8 array of `itemsize` bytes."""
        if self._fill_value is None:
            return np.zeros(self._itemsize, dtype=np.uint8)
        return np.frombuffer(self._fill_value, dtype=np.uint8)

    def fill_block(self, layout: ChunkLayout) -> np.ndarray:
        """A fresh block of items all equal to the fill pattern."""
        block = np.empty(layout.block_shape, dtype=np.uint8)
        block[...] = self.fill_item
        return block

    def __eq__(self, other):
        return (
            isinstance(other, Array)
            and self.store == other.store
            and self.read_only == other.read_only
            # N.B., no need to compare other properties, should be covered by
            # store comparison
        )

    def __len__(self):
        if self._shape:
            return self._shape[0]
        else:
            # 0-dimensional array, same error message as numpy
            raise TypeError("len() of unsized object")

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, traceback):
        self.free()

    def get_slice_buffer(self, start, stop, out, out_shape=None):
        """Copy the items of the range ``[start, stop)`` into a buffer.

        Parameters
        ----------
        start, stop : sequence of ints
            Half-open range, one entry per dimension.
        out : writeable buffer
            Destination addressed as a dense row-major buffer of `out_shape`
            items; the range lands at its origin.
        out_shape : sequence of ints, optional
            Shape of `out` in items, at least ``stop - start`` along every
            dimension. Defaults to ``stop - start``.

        Returns
        -------
        out

        Examples
        --------
        >>> import ndchunk
        >>> z = ndchunk.full((10, 10), fill_value=7, itemsize=1, chunks=(5, 5), blocks=(2, 2))
        >>> out = bytearray(4)
        >>> z.get_slice_buffer((0, 0), (2, 2), out)
        bytearray(b'\\x07\\x07\\x07\\x07')

        """
        return self._synchronized_op(get_slice_buffer, self, start, stop, out, out_shape)

    def get_slice(self, start=None, stop=None) -> np.ndarray:
        """Return the items of ``[start, stop)`` as a new NumPy array of
        :attr:`dtype`. Defaults to the whole array."""
        start = (0,) * self.ndim if start is None else start
        stop = self._shape if stop is None else stop
        start = normalize_coords(start, self.ndim, "start")
        stop = normalize_coords(stop, self.ndim, "stop")
        out = np.empty(range_shape(start, stop), dtype=self._dtype)
        self.get_slice_buffer(start, stop, out)
        return out

    def to_buffer(self) -> bytes:
        """Return every item of the array as dense row-major bytes."""
        out = bytearray(self.nbytes)
        self.get_slice_buffer((0,) * self.ndim, self._shape, out)
        return bytes(out)

    def __getitem__(self, selection):
        """Retrieve data for an item or region of the array.

        Parameters
        ----------
        selection : tuple
            An integer index or step 1 slice or tuple of int/slice objects
            specifying the requested item or region for each dimension of the
            array.

        Returns
        -------
        out : NumPy array or scalar

        Examples
        --------
        >>> import numpy as np
        >>> import ndchunk
        >>> z = ndchunk.array(np.arange(100, dtype="u4"), chunks=10, blocks=5)
        >>> z[5]
        np.uint32(5)
        >>> z[2:5]
        array([2, 3, 4], dtype=uint32)

        """
        self._refresh_metadata()
        indexer = BasicSelection(selection, self._shape)
        out = np.empty(indexer.range_shape, dtype=self._dtype)
        self._synchronized_op(self._read_nosync, indexer.start, indexer.stop, out)
        out = out.reshape(indexer.shape)
        if out.shape == ():
            return out[()]
        return out

    def _read_nosync(self, start, stop, out):
        dest = out.reshape(-1).view(np.uint8).reshape(range_shape(start, stop) + (self._itemsize,))
        read_region(self, dest, start, stop)

    def _as_items(self, value) -> np.ndarray:
        # items are opaque: values of the same width keep their bytes
        value = np.asanyarray(value)
        if value.dtype == self._dtype:
            return value
        if value.dtype.itemsize == self._itemsize and value.dtype.kind != "O":
            return value.view(self._dtype)
        if self._dtype.kind == "V":
            raise InvalidArgumentError(
                f"cannot store items of {value.dtype} in an array of itemsize {self._itemsize}")
        return value.astype(self._dtype)

    def __setitem__(self, selection, value):
        """Modify data for an item or region of the array.

        Parameters
        ----------
        selection : tuple
            An integer index or step 1 slice or tuple of int/slice objects
            specifying the requested region for each dimension of the array.
        value : scalar or array-like
            Value to be stored into the array, broadcast to the selection.

        Examples
        --------
        >>> import ndchunk
        >>> z = ndchunk.zeros(100, itemsize=4, chunks=10, blocks=5)
        >>> z[10:20] = 42
        >>> z[9:12]
        array([ 0, 42, 42], dtype=uint32)

        """
        self._refresh_metadata()
        indexer = BasicSelection(selection, self._shape)
        value = np.broadcast_to(self._as_items(value), indexer.shape)
        value = np.ascontiguousarray(value.reshape(indexer.range_shape))
        self._write_op(set_slice_buffer, self, value, None, indexer.start, indexer.stop)

    def set_slice_buffer(self, value, start, stop, value_shape=None):
        """Write the items of a buffer into the range ``[start, stop)``.

        Parameters
        ----------
        value : buffer
            Source addressed as a dense row-major buffer of `value_shape`
            items; the range is read from its origin.
        start, stop : sequence of ints
            Half-open range, one entry per dimension, inside the array shape.
        value_shape : sequence of ints, optional
            Shape of `value` in items. Defaults to ``stop - start``.

        """
        self._write_op(set_slice_buffer, self, value, value_shape, start, stop)

    def append_buffer(self, buffer, axis=0, nbytes=None):
        """Append the first `nbytes` of a dense row-major buffer along
        `axis`.

        Returns
        -------
        new_shape : tuple

        """
        return self._write_op(append_buffer, self, buffer, axis, nbytes)

    def append(self, data, axis=0):
        """Append `data` to `axis`.

        Parameters
        ----------
        data : array-like
            Data to be appended.
        axis : int
            Axis along which to append.

        Returns
        -------
        new_shape : tuple

        Notes
        -----
        The size of all dimensions other than `axis` must match between this
        array and `data`.

        Examples
        --------
        >>> import numpy as np
        >>> import ndchunk
        >>> a = np.arange(10000, dtype="u4").reshape(100, 100)
        >>> z = ndchunk.array(a, chunks=(10, 10), blocks=(5, 5))
        >>> z.append(a)
        (200, 100)
        >>> z.append(np.vstack([a, a]), axis=1)
        (200, 200)

        """
        self._refresh_metadata()
        data = self._as_items(data)
        if data.ndim != self.ndim:
            raise InvalidArgumentError(
                f"data has {data.ndim} dimensions, expected {self.ndim}")

        # ensure shapes are compatible for non-append dimensions
        self_shape_preserved = tuple(s for i, s in enumerate(self._shape) if i != axis)
        data_shape_preserved = tuple(s for i, s in enumerate(data.shape) if i != axis)
        if self_shape_preserved != data_shape_preserved:
            raise InvalidArgumentError(
                "shape of data to append is not compatible with the array; "
                "all dimensions must match except for the dimension being "
                "appended"
            )
        return self.append_buffer(np.ascontiguousarray(data), axis=axis)

    def resize(self, *args):
        """Change the shape of the array by growing or shrinking one or more
        dimensions.

        Examples
        --------
        >>> import ndchunk
        >>> z = ndchunk.zeros(shape=(10000, 10000), chunks=(1000, 1000))
        >>> z.resize(20000, 10000)
        (20000, 10000)
        >>> z.resize(30000, 1000)
        (30000, 1000)

        Notes
        -----
        Chunks falling outside the new chunk grid are deleted. Items inside
        boundary chunks that a shrink hides are reset to the fill value when
        a later resize exposes them again.

        """
        return self._write_op(resize, self, *args)

    def fill(self, value):
        """Set every item of the array to `value` by discarding all stored
        chunks."""
        self._write_op(self._fill_nosync, value)

    def _fill_nosync(self, value):
        pattern = normalize_fill_value(value, self._itemsize)
        self._store.clear_chunks()
        self._fill_value = pattern
        self._flush_metadata_nosync()

    def free(self):
        """Release the array. In-memory arrays lose their data; persistent
        storage survives and can be reopened."""
        if self.persistent:
            self._store.close()
        else:
            self._store.discard()

    close = free

    def __repr__(self):
        t = type(self)
        r = f"<{t.__module__}.{t.__name__}"
        if self.path:
            r += f" {self.path!r}"
        r += f" {str(self.shape)}"
        r += f" {self.dtype}"
        if self._read_only:
            r += " read-only"
        r += ">"
        return r

    @property
    def info(self):
        """Report some diagnostic information about the array.

        Examples
        --------
        >>> import ndchunk
        >>> z = ndchunk.zeros(1000000, itemsize=4, chunks=100000, blocks=10000)
        >>> z.info
        Type               : ndchunk.core.Array
        Item size          : 4
        Shape              : (1000000,)
        Chunk shape        : (100000,)
        Block shape        : (10000,)
        Read-only          : False
        Compressor         : Blosc(cname='blosclz', clevel=5, shuffle=SHUFFLE, blocksize=0)
        Store type         : ndchunk.storage.FrameStore
        No. bytes          : 4000000 (3.8M)
        No. bytes stored   : ...
        Storage ratio      : ...
        Chunks initialized : 0/10

        """
        return InfoReporter(self)

    def info_items(self):
        return self._synchronized_op(self._info_items_nosync)

    def _info_items_nosync(self):
        def typestr(o):
            return f"{type(o).__module__}.{type(o).__name__}"

        def bytestr(n):
            if n > 2**10:
                return f"{n} ({human_readable_size(n)})"
            else:
                return str(n)

        items = []

        # basic info
        if self.path is not None:
            items += [("Path", self.path)]
        items += [
            ("Type", typestr(self)),
            ("Item size", str(self.itemsize)),
            ("Shape", str(self._shape)),
            ("Chunk shape", str(self.chunks)),
            ("Block shape", str(self.blocks)),
            ("Read-only", str(self.read_only)),
        ]

        # compressor
        items += [("Compressor", repr(self.compressor))]

        # synchronizer
        if self._synchronizer is not None:
            items += [("Synchronizer type", typestr(self._synchronizer))]

        # storage info
        nbytes = self.nbytes
        nbytes_stored = self.nbytes_stored
        items += [("Store type", typestr(self._store))]
        items += [("No. bytes", bytestr(nbytes))]
        if nbytes_stored > 0:
            items += [
                ("No. bytes stored", bytestr(nbytes_stored)),
                ("Storage ratio", f"{nbytes / nbytes_stored:.1f}"),
            ]
        items += [("Chunks initialized", f"{self.nchunks_initialized}/{self.nchunks}")]

        return items

    def _synchronized_op(self, f, *args, **kwargs):
        if self._synchronizer is None:
            # no synchronization
            lock = nolock

        else:
            # synchronize on the array
            lock = self._synchronizer[meta_key]

        with lock:
            self._refresh_metadata_nosync()
            result = f(*args, **kwargs)

        return result

    def _write_op(self, f, *args, **kwargs):
        # guard condition
        if self._read_only:
            raise ReadOnlyError()

        return self._synchronized_op(f, *args, **kwargs)
