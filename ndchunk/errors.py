class MetadataError(Exception):
    pass


class _BaseNdchunkError(ValueError):
    _msg = ""

    def __init__(self, *args):
        super().__init__(self._msg.format(*args))


class _BaseNdchunkIndexError(IndexError):
    _msg = ""

    def __init__(self, *args):
        super().__init__(self._msg.format(*args))


class InvalidArgumentError(ValueError):
    """Malformed shapes, rank mismatches, out of bounds ranges or buffers of
    the wrong size."""

    pass


class CodecError(RuntimeError):
    """Compression or decompression failed, or stored bytes are corrupt."""

    pass


class StorageError(OSError):
    """Persistent I/O failed or a container is truncated."""

    pass


class ChunkNotFoundError(LookupError):
    def __init__(self, index):
        super().__init__(f"chunk {index} is referenced by the container but missing")


class ContainsArrayError(_BaseNdchunkError):
    _msg = "path {0!r} contains an array"


class ArrayNotFoundError(_BaseNdchunkError):
    _msg = "array not found at path {0!r}"


class ReadOnlyError(PermissionError):
    def __init__(self):
        super().__init__("object is read-only")


class BoundsCheckError(_BaseNdchunkIndexError):
    _msg = "index out of bounds for dimension with length {0}"


class NegativeStepError(IndexError):
    def __init__(self):
        super().__init__("only slices with step == 1 are supported")


def err_too_many_indices(selection, shape):
    raise IndexError(f"too many indices for array; expected {len(shape)}, got {len(selection)}")
