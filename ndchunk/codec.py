from typing import Any, Dict, Optional

import numpy as np
from numcodecs.abc import Codec
from numcodecs.compat import ensure_bytes, ensure_contiguous_ndarray_like
from numcodecs.registry import get_codec

from ndchunk.config import default_codec_config
from ndchunk.errors import CodecError, InvalidArgumentError
from ndchunk.util import itemsize_dtype


def normalize_compressor(compressor: Any) -> Optional[Codec]:
    """Resolve the `compressor` argument accepted by the creation functions.

    ``"default"`` builds the codec described by the ``codec`` configuration
    entry, a mapping is looked up in the numcodecs registry, None disables
    compression and a Codec instance is used as is.
    """
    if isinstance(compressor, str) and compressor == "default":
        return get_codec(default_codec_config())
    if compressor is None or isinstance(compressor, Codec):
        return compressor
    if isinstance(compressor, dict):
        return get_codec(dict(compressor))
    raise InvalidArgumentError(f"bad compressor; expected Codec object, found {compressor!r}")


def compressor_config(compressor: Optional[Codec]) -> Optional[Dict[str, Any]]:
    return None if compressor is None else compressor.get_config()


class BlockCodec:
    """Compress and decompress the raw bytes of a single block.

    Parameters
    ----------
    compressor : Codec or None
        Any numcodecs codec. If None, blocks are stored uncompressed.
    itemsize : int
        Width of an item, passed to the codec as the type size so that
        shuffling filters work on whole items.
    """

    def __init__(self, compressor: Optional[Codec], itemsize: int):
        self.compressor = compressor
        self.itemsize = itemsize
        # byte shuffling needs a native item type; odd widths fall back to bytes
        dtype = itemsize_dtype(itemsize)
        self._typed = dtype if dtype.kind == "u" else np.dtype(np.uint8)

    def compress(self, raw) -> bytes:
        buf = np.ascontiguousarray(raw).reshape(-1).view(np.uint8).view(self._typed)
        if self.compressor is None:
            return buf.tobytes()
        try:
            return ensure_bytes(self.compressor.encode(buf))
        except Exception as e:
            raise CodecError(f"error during block compression: {e}") from e

    def decompress(self, cdata, expected_size: int) -> np.ndarray:
        """Decode a block, returning a fresh writeable uint8 array of
        `expected_size` bytes."""
        if self.compressor is None:
            raw = cdata
        else:
            try:
                raw = self.compressor.decode(cdata)
            except Exception as e:
                raise CodecError(f"error during block decompression: {e}") from e
        raw = ensure_contiguous_ndarray_like(raw).reshape(-1).view(np.uint8)
        if not raw.flags.writeable:
            raw = raw.copy()
        if raw.nbytes != expected_size:
            raise CodecError(
                f"decompressed block has {raw.nbytes} bytes, expected {expected_size}")
        return raw
