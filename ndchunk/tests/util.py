import atexit
import errno
import os
import tempfile

import numpy as np

from ndchunk.core import Array
from ndchunk.creation import create
from ndchunk.storage import MemoryStore, atexit_remove, atexit_rmtree
from ndchunk.util import itemsize_dtype


def mktemp(**kwargs):
    f = tempfile.NamedTemporaryFile(**kwargs)
    f.close()
    atexit_remove(f.name)
    return f.name


def mkdtemp():
    path = tempfile.mkdtemp()
    atexit.register(atexit_rmtree, path)
    return path


def sequence(n, itemsize):
    """Array of `n` items counting up from 1, wrapped to the item width."""
    dtype = itemsize_dtype(itemsize)
    if dtype.kind == "u":
        return np.arange(1, n + 1).astype(dtype)
    # opaque widths repeat the counter in every byte
    raw = np.repeat((np.arange(1, n + 1) % 251).astype("u1"), itemsize)
    return raw.view(dtype)


class FailingStore(MemoryStore):
    """In-memory store whose next batch write stores `fail_after` chunks and
    then raises, once."""

    def __init__(self):
        super().__init__()
        self.fail_after = None
        self.fail_reindex = False

    def put_chunks(self, chunks):
        if self.fail_after is None:
            return super().put_chunks(chunks)
        items = list(chunks.items())[:self.fail_after]
        self.fail_after = None
        super().put_chunks(dict(items))
        raise OSError("injected write failure")

    def reindex(self, mapping):
        if self.fail_reindex:
            self.fail_reindex = False
            raise OSError("injected move failure")
        super().reindex(mapping)


def failing_array(shape, **kwargs):
    """An in-memory sparse array backed by a :class:`FailingStore`."""
    template = create(shape, contiguous=False, **kwargs)
    store = FailingStore()
    store.store_metadata(template.store.load_metadata())
    return Array(store)


def fail_replace(monkeypatch, match, skip=0):
    """Make ``os.replace`` raise once, on the call after `skip` calls for
    which ``match(src, dst)`` holds. Returns the list of failed calls."""
    replace = os.replace
    seen = []
    failed = []

    def replace_once(src, dst):
        src, dst = os.fspath(src), os.fspath(dst)
        if not failed and match(src, dst):
            seen.append((src, dst))
            if len(seen) > skip:
                failed.append((src, dst))
                raise OSError(errno.EIO, "injected rename failure", src)
        return replace(src, dst)

    monkeypatch.setattr(os, "replace", replace_once)
    return failed
