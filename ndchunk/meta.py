import binascii
from collections.abc import Mapping
from typing import Any, Mapping as MappingType, Union

from ndchunk.errors import MetadataError
from ndchunk.util import json_dumps, json_loads

NDCHUNK_FORMAT = 1


def parse_metadata(s: Union[MappingType, bytes, str]) -> MappingType[str, Any]:
    # allow stores that hand back an already-parsed document
    if isinstance(s, Mapping):
        return s
    return json_loads(s)


def decode_array_metadata(s: Union[MappingType, bytes, str]) -> MappingType[str, Any]:
    meta = parse_metadata(s)

    # check metadata format
    ndchunk_format = meta.get("ndchunk_format", None)
    if ndchunk_format != NDCHUNK_FORMAT:
        raise MetadataError(f"unsupported ndchunk format: {ndchunk_format}")

    # extract array metadata fields
    try:
        fill_value = meta["fill_value"]
        meta = dict(
            ndchunk_format=ndchunk_format,
            shape=tuple(meta["shape"]),
            chunks=tuple(meta["chunks"]),
            blocks=tuple(meta["blocks"]),
            itemsize=int(meta["itemsize"]),
            fill_value=None if fill_value is None else binascii.unhexlify(fill_value),
            compressor=meta["compressor"],
        )
    except Exception as e:
        raise MetadataError(f"error decoding metadata: {e}") from e
    else:
        return meta


def encode_array_metadata(meta: MappingType[str, Any]) -> bytes:
    fill_value = meta["fill_value"]
    meta = dict(
        ndchunk_format=NDCHUNK_FORMAT,
        shape=list(meta["shape"]),
        chunks=list(meta["chunks"]),
        blocks=list(meta["blocks"]),
        itemsize=meta["itemsize"],
        fill_value=None if fill_value is None else binascii.hexlify(fill_value).decode("ascii"),
        compressor=meta["compressor"],
    )
    return json_dumps(meta)
