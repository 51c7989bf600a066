"""Low-level BLAKE3 primitives: nodes, the compression function and subtree merging."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from typing import Sequence

FLAG_CHUNK_START = 1 << 0
FLAG_CHUNK_END = 1 << 1
FLAG_PARENT = 1 << 2
FLAG_ROOT = 1 << 3
FLAG_KEYED_HASH = 1 << 4
FLAG_DERIVE_KEY_CONTEXT = 1 << 5
FLAG_DERIVE_KEY_MATERIAL = 1 << 6

BLOCK_SIZE = 64
CHUNK_SIZE = 1024
MAX_SIMD = 16

IV: tuple[int, ...] = (
    0x6A09E667, 0xBB67AE85, 0x3C6EF372, 0xA54FF53A,
    0x510E527F, 0x9B05688C, 0x1F83D9AB, 0x5BE0CD19,
)

_MASK = 0xFFFFFFFF
_BLOCK_STRUCT = struct.Struct("<16I")
_ZERO_BLOCK: tuple[int, ...] = (0,) * 16

_MSG_PERMUTATION = (2, 6, 3, 10, 7, 0, 4, 13, 1, 11, 12, 5, 9, 14, 15, 8)

_G_INDICES = (
    (0, 4, 8, 12),
    (1, 5, 9, 13),
    (2, 6, 10, 14),
    (3, 7, 11, 15),
    (0, 5, 10, 15),
    (1, 6, 11, 12),
    (2, 7, 8, 13),
    (3, 4, 9, 14),
)


def _build_schedule() -> tuple[tuple[tuple[int, int, int, int, int, int], ...], ...]:
    rounds = []
    order = list(range(16))
    for _ in range(7):
        rounds.append(
            tuple(
                (a, b, c, d, order[2 * i], order[2 * i + 1])
                for i, (a, b, c, d) in enumerate(_G_INDICES)
            )
        )
        order = [order[p] for p in _MSG_PERMUTATION]
    return tuple(rounds)


_SCHEDULE = _build_schedule()


@dataclass
class Node:
    """A chunk or parent in the BLAKE3 Merkle tree, ready to be compressed."""

    cv: tuple[int, ...] = IV
    block: tuple[int, ...] = field(default=_ZERO_BLOCK)
    counter: int = 0
    block_len: int = 0
    flags: int = 0

    def copy(self) -> Node:
        """Return an independent copy of this node."""
        return replace(self)


def bytes_to_words(data: bytes) -> tuple[int, ...]:
    """Convert 64 bytes to 16 little-endian 32-bit words."""
    if len(data) != BLOCK_SIZE:
        raise ValueError(f"expected {BLOCK_SIZE} bytes, got {len(data)}")
    return _BLOCK_STRUCT.unpack(data)


def words_to_bytes(words: Sequence[int]) -> bytes:
    """Convert 16 32-bit words to 64 little-endian bytes."""
    if len(words) != 16:
        raise ValueError(f"expected 16 words, got {len(words)}")
    return _BLOCK_STRUCT.pack(*words)


def parent_node(left: Sequence[int], right: Sequence[int], key: Sequence[int], flags: int) -> Node:
    """Return a node combining the chaining values of two children."""
    return Node(
        cv=tuple(key),
        block=tuple(left) + tuple(right),
        counter=0,
        block_len=BLOCK_SIZE,
        flags=flags | FLAG_PARENT,
    )


def compress_node(node: Node) -> tuple[int, ...]:
    """Compress a node into a 16-word output."""
    m = node.block
    cv = node.cv
    s = [
        cv[0], cv[1], cv[2], cv[3], cv[4], cv[5], cv[6], cv[7],
        IV[0], IV[1], IV[2], IV[3],
        node.counter & _MASK, (node.counter >> 32) & _MASK,
        node.block_len & _MASK, node.flags & _MASK,
    ]
    for round_ops in _SCHEDULE:
        for a, b, c, d, xi, yi in round_ops:
            va, vb, vc, vd = s[a], s[b], s[c], s[d]
            va = (va + vb + m[xi]) & _MASK
            vd ^= va
            vd = ((vd >> 16) | (vd << 16)) & _MASK
            vc = (vc + vd) & _MASK
            vb ^= vc
            vb = ((vb >> 12) | (vb << 20)) & _MASK
            va = (va + vb + m[yi]) & _MASK
            vd ^= va
            vd = ((vd >> 8) | (vd << 24)) & _MASK
            vc = (vc + vd) & _MASK
            vb ^= vc
            vb = ((vb >> 7) | (vb << 25)) & _MASK
            s[a], s[b], s[c], s[d] = va, vb, vc, vd
    return tuple(s[i] ^ s[i + 8] for i in range(8)) + tuple(s[i + 8] ^ cv[i] for i in range(8))


def chaining_value(node: Node) -> tuple[int, ...]:
    """Compress a node and return the first 8 output words."""
    return compress_node(node)[:8]


def compress_chunk(chunk: bytes, key: Sequence[int], counter: int, flags: int) -> Node:
    """Compress all but the last block of a chunk, returning the final node."""
    if len(chunk) > CHUNK_SIZE:
        raise ValueError(f"chunk longer than {CHUNK_SIZE} bytes")
    node = Node(cv=tuple(key), counter=counter, block_len=BLOCK_SIZE, flags=flags | FLAG_CHUNK_START)
    view = memoryview(chunk)
    while len(view) > BLOCK_SIZE:
        node.block = bytes_to_words(bytes(view[:BLOCK_SIZE]))
        view = view[BLOCK_SIZE:]
        node.cv = chaining_value(node)
        node.flags &= ~FLAG_CHUNK_START
    tail = bytes(view)
    node.block = bytes_to_words(tail.ljust(BLOCK_SIZE, b"\x00"))
    node.block_len = len(tail)
    node.flags |= FLAG_CHUNK_END
    return node


def merge_subtrees(cvs: Sequence[Sequence[int]], key: Sequence[int], flags: int) -> Node:
    """Merge at least two chaining values pairwise into a single root node."""
    if len(cvs) < 2:
        raise ValueError("at least two chaining values are required")
    level = [tuple(cv) for cv in cvs]
    while len(level) > 2:
        merged = [
            chaining_value(parent_node(left, right, key, flags))
            for left, right in zip(level[0::2], level[1::2])
        ]
        if len(level) % 2:
            merged.append(level[-1])
        level = merged
    return parent_node(level[0], level[1], key, flags)


def compress_buffer(buf: bytes, key: Sequence[int], counter: int, flags: int) -> Node:
    """Compress up to MAX_SIMD chunks and return the root node of their subtree."""
    if len(buf) > MAX_SIMD * CHUNK_SIZE:
        raise ValueError(f"buffer longer than {MAX_SIMD * CHUNK_SIZE} bytes")
    if len(buf) <= CHUNK_SIZE:
        return compress_chunk(buf, key, counter, flags)
    view = memoryview(buf)
    cvs = [
        chaining_value(compress_chunk(bytes(view[off:off + CHUNK_SIZE]), key, counter + i, flags))
        for i, off in enumerate(range(0, len(buf), CHUNK_SIZE))
    ]
    return merge_subtrees(cvs, key, flags)


def compress_blocks(node: Node) -> bytes:
    """Compress MAX_SIMD copies of a node with successive counters; return the concatenated output."""
    work = node.copy()
    out = bytearray()
    for i in range(MAX_SIMD):
        work.counter = node.counter + i
        out += words_to_bytes(compress_node(work))
    return bytes(out)