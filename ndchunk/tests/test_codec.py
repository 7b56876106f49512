import numpy as np
import pytest
from numcodecs import Blosc, Zlib

from ndchunk.chunk import CHUNK_MAGIC, Chunk
from ndchunk.codec import BlockCodec, compressor_config, normalize_compressor
from ndchunk.config import config
from ndchunk.errors import CodecError, InvalidArgumentError


def test_normalize_compressor_default():
    compressor = normalize_compressor("default")
    assert isinstance(compressor, Blosc)
    assert "blosclz" == compressor.cname
    assert 5 == compressor.clevel

    with config.set({"codec.cname": "zstd", "codec.clevel": 1}):
        compressor = normalize_compressor("default")
    assert "zstd" == compressor.cname
    assert 1 == compressor.clevel


def test_normalize_compressor():
    assert normalize_compressor(None) is None
    z = Zlib(level=1)
    assert z is normalize_compressor(z)
    assert Zlib(level=3) == normalize_compressor({"id": "zlib", "level": 3})
    with pytest.raises(InvalidArgumentError):
        normalize_compressor("foo")
    assert compressor_config(None) is None
    assert {"id": "zlib", "level": 1} == compressor_config(z)


@pytest.mark.parametrize("compressor", [None, Zlib(level=1), Blosc(shuffle=Blosc.SHUFFLE)])
@pytest.mark.parametrize("itemsize", [1, 2, 3, 4, 8, 13])
def test_block_codec(compressor, itemsize):
    codec = BlockCodec(compressor, itemsize)
    raw = np.arange(60 * itemsize, dtype="u1").reshape(60, itemsize)
    cdata = codec.compress(raw)
    assert isinstance(cdata, bytes)
    out = codec.decompress(cdata, raw.nbytes)
    assert np.uint8 == out.dtype
    assert out.flags.writeable
    assert raw.tobytes() == out.tobytes()


def test_block_codec_size_mismatch():
    codec = BlockCodec(Zlib(), 4)
    cdata = codec.compress(np.zeros(16, dtype="u1"))
    with pytest.raises(CodecError):
        codec.decompress(cdata, 32)


def test_block_codec_corrupt():
    codec = BlockCodec(Zlib(), 1)
    with pytest.raises(CodecError):
        codec.decompress(b"not compressed data", 16)


class TestChunk:

    def test_roundtrip(self):
        blocks = [b"a", b"bcd", b"", b"efgh"]
        chunk = Chunk(blocks)
        cdata = chunk.tobytes()
        assert cdata.startswith(CHUNK_MAGIC)
        assert 9 == chunk.cbytes
        decoded = Chunk.frombytes(cdata, 4)
        assert 4 == len(decoded)
        assert blocks == [bytes(decoded[i]) for i in range(4)]

    def test_replace_block(self):
        chunk = Chunk.frombytes(Chunk([b"aa", b"bb", b"cc"]).tobytes(), 3)
        chunk[1] = b"xyz"
        decoded = Chunk.frombytes(chunk.tobytes(), 3)
        assert [b"aa", b"xyz", b"cc"] == [bytes(decoded[i]) for i in range(3)]

    def test_uniform(self):
        chunk = Chunk.uniform(b"zz", 5)
        assert 5 == len(chunk)
        assert all(bytes(chunk[i]) == b"zz" for i in range(5))

    def test_corrupt(self):
        cdata = Chunk([b"aa", b"bb"]).tobytes()
        with pytest.raises(CodecError):
            Chunk.frombytes(cdata, 3)
        with pytest.raises(CodecError):
            Chunk.frombytes(b"garbage" + cdata, 2)
        with pytest.raises(CodecError):
            Chunk.frombytes(cdata[:-1], 2)
        with pytest.raises(CodecError):
            Chunk.frombytes(cdata[:10], 2)
