"""This module contains the chunk stores backing ndchunk arrays.

A chunk store persists whole compressed chunks addressed by their linear index
in the chunk grid, together with the array metadata document. Two physical
layouts are provided:

* sparse, one independently addressable entry per chunk
  (:class:`MemoryStore` in main memory, :class:`DirectoryStore` on disk);
* contiguous, every chunk packed into a single container with an offset
  table (:class:`FrameStore`, in memory or as a single file).

The slice and resize engines only use the :class:`ChunkStore` interface, so
they are agnostic to which layout is active.

"""

import abc
import atexit
import io
import logging
import os
import shutil
import uuid
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np
from numcodecs.compat import ensure_bytes

from ndchunk.defaults import chunk_suffix, meta_key
from ndchunk.errors import ChunkNotFoundError, StorageError
from ndchunk.util import json_dumps, json_loads, retry_call

logger = logging.getLogger(__name__)


class ChunkStore(abc.ABC):
    """Abstract chunk store.

    Subclasses implement single chunk access; batch operations fall back to
    looping over single chunks unless overridden.
    """

    #: location of the backing storage, None for in-memory stores
    path: Optional[str] = None
    contiguous: bool = False

    @property
    def persistent(self) -> bool:
        return self.path is not None

    @abc.abstractmethod
    def get_chunk(self, index: int) -> Optional[bytes]:
        """Return the compressed chunk stored at `index`, or None if absent."""

    @abc.abstractmethod
    def put_chunk(self, index: int, cdata) -> None:
        """Store a compressed chunk at `index`, replacing any previous one."""

    @abc.abstractmethod
    def delete_chunk(self, index: int) -> None:
        """Remove the chunk at `index`; absent chunks are ignored."""

    @abc.abstractmethod
    def chunk_indices(self) -> List[int]:
        """Sorted indices of all stored chunks."""

    @abc.abstractmethod
    def load_metadata(self) -> Optional[bytes]:
        pass

    @abc.abstractmethod
    def store_metadata(self, meta: bytes) -> None:
        pass

    @abc.abstractmethod
    def chunk_size(self, index: int) -> int:
        """Stored size in bytes of the chunk at `index` (0 when absent)."""

    def chunk_exists(self, index: int) -> bool:
        return index in set(self.chunk_indices())

    def put_chunks(self, chunks: Mapping[int, bytes]) -> None:
        for index, cdata in chunks.items():
            self.put_chunk(index, cdata)

    def delete_chunks(self, indices: Iterable[int]) -> None:
        for index in indices:
            self.delete_chunk(index)

    def clear_chunks(self) -> None:
        self.delete_chunks(self.chunk_indices())

    def reindex(self, mapping: Mapping[int, int]) -> None:
        """Move chunks to new indices, ``mapping`` is ``{old: new}``.

        Chunks not named in `mapping` keep their index. Entries are moved
        without decoding them.
        """
        if not mapping:
            return
        moved = {new: self.get_chunk(old) for old, new in mapping.items()}
        self.delete_chunks(mapping.keys())
        self.put_chunks({new: cdata for new, cdata in moved.items() if cdata is not None})

    @property
    def nchunks_stored(self) -> int:
        return len(self.chunk_indices())

    @property
    def nbytes_stored(self) -> int:
        return sum(self.chunk_size(i) for i in self.chunk_indices())

    def refresh(self) -> None:
        """Pick up changes made through other handles on the same storage."""
        pass

    def close(self) -> None:
        """Release handles; the stored data survives."""
        pass

    def discard(self) -> None:
        """Release handles and drop the stored data."""
        self.close()

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, traceback):
        self.close()


class MemoryStore(ChunkStore):
    """Sparse layout held in a dict in main memory.

    Notes
    -----
    Safe to write in multiple threads.

    """

    def __init__(self, root=None):
        self.root = {} if root is None else root
        self.meta = None
        self.write_mutex = Lock()

    def get_chunk(self, index):
        return self.root.get(index)

    def put_chunk(self, index, cdata):
        with self.write_mutex:
            self.root[index] = ensure_bytes(cdata)

    def delete_chunk(self, index):
        with self.write_mutex:
            self.root.pop(index, None)

    def chunk_exists(self, index):
        return index in self.root

    def chunk_indices(self):
        return sorted(self.root)

    def chunk_size(self, index):
        cdata = self.root.get(index)
        return 0 if cdata is None else len(cdata)

    def reindex(self, mapping):
        with self.write_mutex:
            moved = {new: self.root.pop(old) for old, new in mapping.items() if old in self.root}
            self.root.update(moved)

    def load_metadata(self):
        return self.meta

    def store_metadata(self, meta):
        self.meta = ensure_bytes(meta)

    def discard(self):
        with self.write_mutex:
            self.root = {}
            self.meta = None

    def __eq__(self, other):
        return isinstance(other, MemoryStore) and self.root == other.root

    def __repr__(self):
        return f"<{self.__class__.__name__}: {len(self.root)} chunks at {id(self):#x}>"


class DirectoryStore(ChunkStore):
    """Sparse layout using one file per chunk in a directory on a standard
    file system.

    Parameters
    ----------
    path : string
        Location of the directory. It is created on the first write.

    Notes
    -----
    Atomic writes are used, which means that data are first written to a
    temporary file, then moved into place when the write is successfully
    completed. Files are only held open while they are being read or written and are
    closed immediately afterwards, so there is no need to manually close any files.

    """

    def __init__(self, path):
        # guard conditions
        path = os.path.abspath(os.fspath(path))
        if os.path.exists(path) and not os.path.isdir(path):
            raise StorageError(f"path exists but is not a directory: {path!r}")

        self.path = path

    def _chunk_path(self, index):
        return os.path.join(self.path, f"{index}{chunk_suffix}")

    @staticmethod
    def _fromfile(fn):
        with open(fn, "rb") as f:
            return f.read()

    @staticmethod
    def _tofile(a, fn):
        with open(fn, mode="wb") as f:
            f.write(a)

    def _read(self, file_path):
        try:
            return self._fromfile(file_path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"error reading {file_path!r}: {e}") from e

    def _write(self, file_path, value):
        value = ensure_bytes(value)
        dir_path, file_name = os.path.split(file_path)

        # write to temporary file
        # note we're not using tempfile.NamedTemporaryFile to avoid restrictive file permissions
        temp_name = file_name + "." + uuid.uuid4().hex + ".partial"
        temp_path = os.path.join(dir_path, temp_name)
        try:
            os.makedirs(dir_path, exist_ok=True)
            self._tofile(value, temp_path)

            # move temporary file into place;
            # make several attempts at writing the temporary file to get past
            # potential antivirus file locking issues
            retry_call(os.replace, (temp_path, file_path), exceptions=(PermissionError,))
        except OSError as e:
            raise StorageError(f"error writing {file_path!r}: {e}") from e
        finally:
            # clean up if temp file still exists for whatever reason
            if os.path.exists(temp_path):  # pragma: no cover
                os.remove(temp_path)

    def get_chunk(self, index):
        return self._read(self._chunk_path(index))

    def put_chunk(self, index, cdata):
        self._write(self._chunk_path(index), cdata)

    def delete_chunk(self, index):
        try:
            os.remove(self._chunk_path(index))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"error deleting chunk {index}: {e}") from e

    def chunk_exists(self, index):
        return os.path.isfile(self._chunk_path(index))

    def chunk_indices(self):
        if not os.path.isdir(self.path):
            return []
        indices = []
        for name in os.listdir(self.path):
            stem, suffix = os.path.splitext(name)
            if suffix == chunk_suffix and stem.isdigit():
                indices.append(int(stem))
        return sorted(indices)

    def chunk_size(self, index):
        try:
            return os.path.getsize(self._chunk_path(index))
        except FileNotFoundError:
            return 0

    def reindex(self, mapping):
        # two passes through temporary names so that moves never collide
        tag = uuid.uuid4().hex
        staged = []
        placed = []
        try:
            for old, new in mapping.items():
                src = self._chunk_path(old)
                if os.path.isfile(src):
                    tmp = f"{self._chunk_path(new)}.{tag}.move"
                    os.replace(src, tmp)
                    staged.append((src, tmp, self._chunk_path(new)))
            for src, tmp, dst in staged:
                os.replace(tmp, dst)
                placed.append((tmp, dst))
        except OSError as e:
            self._unstage(staged, placed)
            raise StorageError(f"error moving chunks in {self.path!r}: {e}") from e
        logger.debug("moved %d chunk files in %s", len(staged), self.path)

    def _unstage(self, staged, placed):
        # undo in reverse: placed files go back to their temporary names
        # first, so that no original name is still taken when restoring
        try:
            for tmp, dst in reversed(placed):
                os.replace(dst, tmp)
            for src, tmp, _ in reversed(staged):
                os.replace(tmp, src)
        except OSError:
            logger.error("error restoring chunk files in %s", self.path, exc_info=True)

    def load_metadata(self):
        return self._read(os.path.join(self.path, meta_key))

    def store_metadata(self, meta):
        self._write(os.path.join(self.path, meta_key), meta)

    def discard(self):
        if os.path.isdir(self.path):
            shutil.rmtree(self.path)

    def __eq__(self, other):
        return isinstance(other, DirectoryStore) and self.path == other.path

    def __repr__(self):
        return f"<{self.__class__.__name__}: {self.path!r}>"


FRAME_MAGIC = b"NDFRAME1"
_FOOTER = np.dtype("<u8")
_FOOTER_SIZE = _FOOTER.itemsize + len(FRAME_MAGIC)


class FrameStore(ChunkStore):
    """Contiguous layout packing every chunk into one container.

    The container is a header magic followed by chunk records and a trailer::

        magic | chunk records ... | trailer (JSON) | trailer offset (<u8) | magic

    The trailer holds the metadata document and the offset table mapping
    chunk indices to ``[offset, length]`` records. Writes append new records
    and then rewrite the trailer, so the previous state stays readable until
    the new trailer is in place.

    Records superseded by a rewrite of the same chunk, by a deletion or by a
    resize are not reclaimed, so :attr:`nbytes` grows with every write even
    when :attr:`nbytes_stored` does not. Call :meth:`compact` to rewrite the
    container with only the live records.

    Parameters
    ----------
    path : string, optional
        File backing the frame. If None, the frame lives in a memory buffer.
    mode : {'r', 'r+', 'w'}, optional
        'w' creates a new, empty frame; 'r' and 'r+' open an existing one.
    """

    contiguous = True

    def __init__(self, path=None, mode="w"):
        self.path = None if path is None else os.path.abspath(os.fspath(path))
        self.mode = mode
        self._mutex = Lock()
        self._meta = None
        self._table: Dict[int, List[int]] = {}
        try:
            if self.path is None:
                self._fh = io.BytesIO()
            elif mode == "w":
                self._fh = open(self.path, "w+b")
            else:
                self._fh = open(self.path, "rb" if mode == "r" else "r+b")
        except OSError as e:
            raise StorageError(f"error opening frame {self.path!r}: {e}") from e

        if mode == "w":
            self._size = len(FRAME_MAGIC)
            self._fh.write(FRAME_MAGIC)
            self._commit(self._table, self._meta)
        else:
            try:
                self._read_trailer()
            except StorageError:
                self._fh.close()
                raise

    def _read_trailer(self):
        fh = self._fh
        try:
            size = fh.seek(0, io.SEEK_END)
            if size < len(FRAME_MAGIC) + _FOOTER_SIZE:
                raise StorageError(f"truncated frame {self.path!r}")
            fh.seek(size - _FOOTER_SIZE)
            footer = fh.read(_FOOTER_SIZE)
            fh.seek(0)
            head = fh.read(len(FRAME_MAGIC))
        except OSError as e:
            raise StorageError(f"error reading frame {self.path!r}: {e}") from e
        if head != FRAME_MAGIC or footer[_FOOTER.itemsize:] != FRAME_MAGIC:
            raise StorageError(f"not a frame or truncated frame: {self.path!r}")
        trailer_offset = int(np.frombuffer(footer, dtype=_FOOTER, count=1)[0])
        if trailer_offset > size - _FOOTER_SIZE:
            raise StorageError(f"corrupt frame trailer in {self.path!r}")
        fh.seek(trailer_offset)
        try:
            trailer = json_loads(fh.read(size - _FOOTER_SIZE - trailer_offset))
            table = {int(k): list(v) for k, v in trailer["chunks"].items()}
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageError(f"corrupt frame trailer in {self.path!r}: {e}") from e
        self._size = size
        self._meta = trailer.get("meta")
        self._table = table

    def _commit(self, table, meta, end=None):
        # the new trailer goes after everything already written, so the old
        # trailer stays valid until the footer pointing at the new one lands
        end = self._size if end is None else end
        trailer = json_dumps({
            "chunks": {str(k): v for k, v in sorted(table.items())},
            "meta": meta,
        })
        footer = np.array([end], dtype=_FOOTER).tobytes() + FRAME_MAGIC
        fh = self._fh
        try:
            fh.seek(end)
            fh.write(trailer)
            fh.write(footer)
            fh.truncate()
            fh.flush()
        except (OSError, ValueError) as e:
            raise StorageError(f"error writing frame {self.path!r}: {e}") from e
        self._size = end + len(trailer) + len(footer)
        self._table = table
        self._meta = meta

    def get_chunk(self, index):
        with self._mutex:
            record = self._table.get(index)
            if record is None:
                return None
            offset, length = record
            try:
                self._fh.seek(offset)
                cdata = self._fh.read(length)
            except (OSError, ValueError) as e:
                raise StorageError(f"error reading frame {self.path!r}: {e}") from e
            if len(cdata) != length:
                raise ChunkNotFoundError(index)
            return cdata

    def put_chunks(self, chunks):
        with self._mutex:
            table = dict(self._table)
            end = self._size
            try:
                self._fh.seek(end)
                for index, cdata in chunks.items():
                    cdata = ensure_bytes(cdata)
                    self._fh.write(cdata)
                    table[index] = [end, len(cdata)]
                    end += len(cdata)
            except (OSError, ValueError) as e:
                raise StorageError(f"error writing frame {self.path!r}: {e}") from e
            self._commit(table, self._meta, end)

    def put_chunk(self, index, cdata):
        self.put_chunks({index: cdata})

    def delete_chunks(self, indices):
        with self._mutex:
            table = dict(self._table)
            for index in indices:
                table.pop(index, None)
            if table != self._table:
                self._commit(table, self._meta)

    def delete_chunk(self, index):
        self.delete_chunks([index])

    def chunk_exists(self, index):
        return index in self._table

    def chunk_indices(self):
        return sorted(self._table)

    def chunk_size(self, index):
        record = self._table.get(index)
        return 0 if record is None else record[1]

    def reindex(self, mapping):
        with self._mutex:
            table = dict(self._table)
            moved = {new: table.pop(old) for old, new in mapping.items() if old in table}
            table.update(moved)
            self._commit(table, self._meta)

    def load_metadata(self):
        return None if self._meta is None else self._meta.encode("ascii")

    def store_metadata(self, meta):
        with self._mutex:
            self._commit(self._table, ensure_bytes(meta).decode("ascii"))

    @property
    def nbytes(self) -> int:
        """Size of the whole container, including superseded records."""
        return self._size

    def refresh(self):
        if self.path is not None:
            with self._mutex:
                self._read_trailer()

    def compact(self):
        """Rewrite the container keeping only the live chunk records.

        A file backed frame is rebuilt in a temporary file which then replaces
        the original, so a failure leaves the previous container in place.
        Other handles open on the same file must be reopened afterwards.
        """
        if self.mode == "r":
            raise StorageError(f"frame {self.path!r} is read-only")
        with self._mutex:
            old_fh, old_size, old_table = self._fh, self._size, self._table
            fh = temp_path = None
            table = {}
            try:
                if self.path is None:
                    fh = io.BytesIO()
                else:
                    temp_path = f"{self.path}.{uuid.uuid4().hex}.partial"
                    fh = open(temp_path, "w+b")
                fh.write(FRAME_MAGIC)
                end = len(FRAME_MAGIC)
                for index, (offset, length) in sorted(old_table.items()):
                    old_fh.seek(offset)
                    fh.write(old_fh.read(length))
                    table[index] = [end, length]
                    end += length
                self._fh = fh
                self._commit(table, self._meta, end)
                if temp_path is not None:
                    os.replace(temp_path, self.path)
            except (OSError, ValueError) as e:
                if fh is not None:
                    fh.close()
                self._fh, self._size, self._table = old_fh, old_size, old_table
                if temp_path is not None and os.path.exists(temp_path):
                    os.remove(temp_path)
                raise StorageError(f"error compacting frame {self.path!r}: {e}") from e
            old_fh.close()
        logger.debug("compacted frame %s from %d to %d bytes", self.path, old_size,
                     self._size)

    def close(self):
        if not self._fh.closed and self.path is not None:
            self._fh.close()

    def discard(self):
        self._fh.close()
        if self.path is not None and os.path.isfile(self.path):
            os.remove(self.path)

    def __repr__(self):
        where = "memory" if self.path is None else repr(self.path)
        return f"<{self.__class__.__name__}: {where}>"


def remove(path) -> None:
    """Delete the persistent storage at `path`. A missing path is not an
    error."""
    path = os.fspath(path)
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
    except OSError as e:
        raise StorageError(f"error removing {path!r}: {e}") from e


def open_store(path=None, contiguous=True, mode="w") -> ChunkStore:
    """Instantiate the chunk store for the given layout."""
    if contiguous:
        return FrameStore(path, mode=mode)
    if path is None:
        return MemoryStore()
    return DirectoryStore(path)


def atexit_rmtree(path, isdir=os.path.isdir, rmtree=shutil.rmtree):  # pragma: no cover
    """Ensure directory removal at interpreter exit."""
    if isdir(path):
        rmtree(path)


def atexit_remove(path):  # pragma: no cover
    """Ensure removal of a file or directory at interpreter exit."""
    atexit.register(remove, path)
