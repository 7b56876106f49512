# flake8: noqa
from ndchunk.config import config
from ndchunk.core import Array
from ndchunk.creation import (array, copy, create, empty, from_buffer, full, ones,
                              open_array, validate, zeros)
from ndchunk.errors import (ArrayNotFoundError, ChunkNotFoundError, CodecError,
                            ContainsArrayError, InvalidArgumentError, MetadataError,
                            ReadOnlyError, StorageError)
from ndchunk.storage import (ChunkStore, DirectoryStore, FrameStore, MemoryStore,
                             remove)
from ndchunk.sync import ProcessSynchronizer, ThreadSynchronizer
from ndchunk.version import version as __version__
