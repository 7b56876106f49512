"""Coordinate arithmetic for the chunk/block partitioning of an array.

All functions work on tuples of length ``ndim`` and are written once for every
rank; a rank-0 array naturally degenerates to a single chunk holding a single
block because the empty product has one element. Ranges are half-open
``[start, stop)`` pairs of tuples. Nothing here validates its arguments.
"""
import itertools
import operator
from functools import reduce
from typing import Iterator, Optional, Tuple

Coords = Tuple[int, ...]
Range = Tuple[Coords, Coords]


def ceildiv(a: int, b: int) -> int:
    return -(-a // b)


def prod(values) -> int:
    return reduce(operator.mul, values, 1)


def chunk_index_of(coords: Coords, chunks: Coords) -> Coords:
    """Grid coordinates of the chunk holding the item at `coords`."""
    return tuple(c // s for c, s in zip(coords, chunks))


def chunk_count(shape: Coords, chunks: Coords) -> Coords:
    """Number of chunks along each dimension."""
    return tuple(ceildiv(s, c) if s else 0 for s, c in zip(shape, chunks))


def chunk_origin(chunk_coords: Coords, chunks: Coords) -> Coords:
    return tuple(i * c for i, c in zip(chunk_coords, chunks))


def chunk_extent(chunk_coords: Coords, shape: Coords, chunks: Coords) -> Coords:
    """Actual shape of a chunk, clamped against the array boundary."""
    return tuple(min(c, s - i * c) for i, s, c in zip(chunk_coords, shape, chunks))


def block_count(chunk_shape: Coords, blocks: Coords) -> Coords:
    """Number of blocks along each dimension of a chunk of `chunk_shape`."""
    return tuple(ceildiv(c, b) if c else 0 for c, b in zip(chunk_shape, blocks))


def block_extent(block_coords: Coords, chunk_shape: Coords, blocks: Coords) -> Coords:
    """Actual shape of a block, clamped against the chunk boundary."""
    return tuple(min(b, c - i * b) for i, c, b in zip(block_coords, chunk_shape, blocks))


def padded_shape(shape: Coords, part: Coords) -> Coords:
    """`shape` rounded up to a whole number of `part` partitions."""
    return tuple(ceildiv(s, p) * p if s else 0 for s, p in zip(shape, part))


def intersect(a: Range, b: Range) -> Optional[Range]:
    """Intersection of two ranges, or None when it is empty in any dimension."""
    start = tuple(max(x, y) for x, y in zip(a[0], b[0]))
    stop = tuple(min(x, y) for x, y in zip(a[1], b[1]))
    if any(lo >= hi for lo, hi in zip(start, stop)):
        return None
    return start, stop


def is_empty(start: Coords, stop: Coords) -> bool:
    return any(lo >= hi for lo, hi in zip(start, stop))


def range_shape(start: Coords, stop: Coords) -> Coords:
    return tuple(hi - lo for lo, hi in zip(start, stop))


def shift(coords: Coords, origin: Coords) -> Coords:
    """Express `coords` relative to `origin`."""
    return tuple(c - o for c, o in zip(coords, origin))


def grid_range(start: Coords, stop: Coords, part: Coords) -> Range:
    """Grid coordinates of the partitions of size `part` that overlap the
    non-empty range ``[start, stop)``."""
    lo = tuple(s // p for s, p in zip(start, part))
    hi = tuple(ceildiv(s, p) for s, p in zip(stop, part))
    return lo, hi


def iter_grid(lo: Coords, hi: Coords) -> Iterator[Coords]:
    """Iterate over grid coordinates in ``[lo, hi)`` in row-major order."""
    return itertools.product(*(range(a, b) for a, b in zip(lo, hi)))


def c_strides(shape: Coords) -> Coords:
    """Row-major strides, in items, of a dense buffer of `shape`."""
    strides = []
    acc = 1
    for s in reversed(shape):
        strides.append(acc)
        acc *= s
    return tuple(reversed(strides))


def linear_offset(coords: Coords, strides: Coords) -> int:
    return sum(c * s for c, s in zip(coords, strides))


def ravel_index(coords: Coords, grid: Coords) -> int:
    """Row-major linear index of `coords` inside a grid of shape `grid`."""
    return linear_offset(coords, c_strides(grid))


def unravel_index(index: int, grid: Coords) -> Coords:
    coords = []
    for g in reversed(grid):
        index, c = divmod(index, g) if g else (index, 0)
        coords.append(c)
    return tuple(reversed(coords))


def as_slices(start: Coords, stop: Coords) -> Tuple[slice, ...]:
    return tuple(slice(lo, hi) for lo, hi in zip(start, stop))
