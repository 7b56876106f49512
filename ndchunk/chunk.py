"""Serialized form of a compressed chunk.

A chunk frame holds every block of a chunk compressed independently, so a
reader can decode a single block and a writer can replace a single block
without touching the compressed bytes of the others::

    magic (8 bytes) | nblocks (<i8) | offsets (<i8 x nblocks + 1) | payload

Offsets are relative to the start of the payload; block ``i`` occupies
``payload[offsets[i]:offsets[i + 1]]``.
"""
from typing import List

import numpy as np

from ndchunk.errors import CodecError

CHUNK_MAGIC = b"NDCHUNK1"
_HEADER_ITEMS = np.dtype("<i8")


class Chunk:
    """A chunk as a list of compressed blocks.

    Parameters
    ----------
    blocks : list of bytes-like
        Compressed bytes of each block, in row-major block order.
    """

    def __init__(self, blocks: List):
        self._blocks = list(blocks)

    @classmethod
    def uniform(cls, cblock, nblocks: int) -> "Chunk":
        """A chunk whose blocks all share the same compressed bytes."""
        return cls([cblock] * nblocks)

    @classmethod
    def frombytes(cls, cdata, nblocks: int) -> "Chunk":
        buf = memoryview(cdata).cast("B")
        header_size = len(CHUNK_MAGIC) + _HEADER_ITEMS.itemsize * (nblocks + 2)
        if len(buf) < header_size or bytes(buf[:len(CHUNK_MAGIC)]) != CHUNK_MAGIC:
            raise CodecError("corrupt chunk frame: bad header")
        header = np.frombuffer(buf, dtype=_HEADER_ITEMS, count=nblocks + 2,
                               offset=len(CHUNK_MAGIC))
        if header[0] != nblocks:
            raise CodecError(f"corrupt chunk frame: {header[0]} blocks, expected {nblocks}")
        offsets = header[1:]
        payload = buf[header_size:]
        if offsets[0] != 0 or offsets[-1] != len(payload) or np.any(np.diff(offsets) < 0):
            raise CodecError("corrupt chunk frame: bad offset table")
        offsets = offsets.tolist()
        return cls([payload[lo:hi] for lo, hi in zip(offsets[:-1], offsets[1:])])

    def tobytes(self) -> bytes:
        sizes = [len(memoryview(b).cast("B")) for b in self._blocks]
        header = np.empty(len(sizes) + 2, dtype=_HEADER_ITEMS)
        header[0] = len(sizes)
        header[1] = 0
        np.cumsum(sizes, out=header[2:])
        return b"".join([CHUNK_MAGIC, header.tobytes()] + [bytes(b) for b in self._blocks])

    def __len__(self):
        return len(self._blocks)

    def __getitem__(self, i):
        return self._blocks[i]

    def __setitem__(self, i, cblock):
        self._blocks[i] = cblock

    @property
    def cbytes(self) -> int:
        return sum(len(memoryview(b).cast("B")) for b in self._blocks)
