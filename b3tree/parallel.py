"""Hash a file by splitting it into segments that are compressed concurrently."""

from __future__ import annotations

import os
import struct
from concurrent.futures import ThreadPoolExecutor
from typing import NamedTuple, Sequence

from .guts import (
    CHUNK_SIZE,
    FLAG_KEYED_HASH,
    IV,
    MAX_SIMD,
    Node,
    chaining_value,
    compress_buffer,
    parent_node,
)
from .hasher import Hasher

DEFAULT_PARALLEL_BITS = 19

_PER = MAX_SIMD * CHUNK_SIZE
_KEY_STRUCT = struct.Struct("<8I")


class _SubtreeRoot(NamedTuple):
    cv: tuple[int, ...]
    node: Node
    height: int
    chunk_index: int
    full_buffers: int


def _key_setup(key: bytes | None) -> tuple[tuple[int, ...], int]:
    if key is None:
        return tuple(IV), 0
    if len(key) != _KEY_STRUCT.size:
        raise ValueError(f"key must be {_KEY_STRUCT.size} bytes, got {len(key)}")
    return _KEY_STRUCT.unpack(bytes(key)), FLAG_KEYED_HASH


def one_core_cv(
    buf: bytes, base_chunk_counter: int, key_words: Sequence[int], flags: int
) -> _SubtreeRoot:
    """Hash a chunk-aligned buffer into one subtree.

    Returns the subtree's chaining value, its top node, its height above the
    MAX_SIMD-chunk buffers, the chunk index of the last buffer compressed and
    the number of full buffers hashed.
    """
    if len(buf) == 0:
        raise ValueError("buffer must not be empty")
    view = memoryview(bytes(buf))
    cvs: list[tuple[int, ...]] = []
    nodes: list[Node] = []
    full_buffers = 0
    chunk_index = base_chunk_counter
    for i, off in enumerate(range(0, len(view), _PER)):
        piece = bytes(view[off:off + _PER])
        if len(piece) == _PER:
            full_buffers += 1
        chunk_index = base_chunk_counter + i * MAX_SIMD
        node = compress_buffer(piece, key_words, chunk_index, flags)
        cvs.append(chaining_value(node))
        nodes.append(node)

    height = 0
    while len(cvs) > 2:
        next_cvs: list[tuple[int, ...]] = []
        next_nodes: list[Node] = []
        for left, right in zip(cvs[0::2], cvs[1::2]):
            par = parent_node(left, right, key_words, flags)
            next_cvs.append(chaining_value(par))
            next_nodes.append(par)
        if len(cvs) % 2:
            next_cvs.append(cvs[-1])
            next_nodes.append(nodes[-1])
        cvs, nodes = next_cvs, next_nodes
        height += 1

    if len(cvs) == 2:
        top = parent_node(cvs[0], cvs[1], key_words, flags)
        cv_top = chaining_value(top)
        height += 1
    else:
        top = nodes[0]
        cv_top = cvs[0]
    return _SubtreeRoot(tuple(cv_top), top, height, chunk_index, full_buffers)


def _read_segment(path: str | os.PathLike, beg: int, end: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(beg)
        data = f.read(end - beg)
    if len(data) != end - beg:
        raise OSError(
            f"short read from {os.fspath(path)!r}: expected {end - beg} bytes, got {len(data)}"
        )
    return data


def add_file_parallel(
    hasher: Hasher,
    path: str | os.PathLike,
    key: bytes | None = None,
    parallel_bits: int = 0,
    workers: int = 0,
) -> None:
    """Absorb the contents of a file into hasher, hashing segments concurrently.

    Segments are 2**parallel_bits bytes (2**19 when parallel_bits is 0), never
    smaller than MAX_SIMD chunks. workers <= 0 means one worker per CPU.
    """
    key_words, flags = _key_setup(key)

    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        segment = 1 << (parallel_bits if parallel_bits != 0 else DEFAULT_PARALLEL_BITS)
        segment = max(segment, _PER)
        if size <= segment:
            data = f.read()
            if len(data) != size:
                raise OSError(
                    f"short read from {os.fspath(path)!r}: expected {size} bytes, got {len(data)}"
                )
            hasher.write(data)
            return

    n_segments = (size + segment - 1) // segment
    n_workers = workers if workers > 0 else (os.cpu_count() or 1)
    n_workers = min(n_workers, n_segments)

    def job(index: int) -> _SubtreeRoot | bytes:
        beg = index * segment
        end = min(beg + segment, size)
        data = _read_segment(path, beg, end)
        if index == n_segments - 1:
            return data
        return one_core_cv(data, beg // CHUNK_SIZE, key_words, flags)

    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        results = list(pool.map(job, range(n_segments)))

    *subtrees, last_segment = results
    for root in subtrees:
        hasher.merge_subtree(root.cv, root.height, root.full_buffers)
    hasher.write(last_segment)