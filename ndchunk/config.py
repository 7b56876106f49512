from typing import Any, Dict

from donfig import Config

config = Config(
    "ndchunk",
    defaults=[
        {
            "codec": {
                "id": "blosc",
                "cname": "blosclz",
                "clevel": 5,
                "shuffle": 1,
                "blocksize": 0,
            },
            "threading": {"max_workers": 1},
            "array": {"contiguous": True},
        }
    ],
)


def default_codec_config() -> Dict[str, Any]:
    """Return a fresh copy of the configured default codec description."""
    return dict(config.get("codec"))
