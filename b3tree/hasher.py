"""Incremental BLAKE3 hashing, extendable output and key derivation."""

from __future__ import annotations

import io
import struct
from typing import Sequence

from .guts import (
    BLOCK_SIZE,
    CHUNK_SIZE,
    FLAG_CHUNK_END,
    FLAG_CHUNK_START,
    FLAG_DERIVE_KEY_CONTEXT,
    FLAG_DERIVE_KEY_MATERIAL,
    FLAG_KEYED_HASH,
    FLAG_ROOT,
    IV,
    MAX_SIMD,
    Node,
    bytes_to_words,
    chaining_value,
    compress_blocks,
    compress_buffer,
    compress_chunk,
    compress_node,
    parent_node,
    words_to_bytes,
)

KEY_SIZE = 32

_BUF_SIZE = MAX_SIMD * CHUNK_SIZE
_OUT_STRIDE = MAX_SIMD * BLOCK_SIZE
_MAX_OFFSET = (1 << 64) - 1
_U64 = (1 << 64) - 1
# One subtree root per height: 64 bits of length minus log2(MAX_SIMD) and log2(CHUNK_SIZE).
_STACK_DEPTH = 64 - (4 + 10)
_KEY_STRUCT = struct.Struct("<8I")


def _key_words(key: bytes) -> tuple[int, ...]:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
    return _KEY_STRUCT.unpack(bytes(key))


class OutputReader:
    """A seekable stream of 2**64 - 1 pseudorandom output bytes."""

    def __init__(self, node: Node) -> None:
        self._node = node.copy()
        self._buf = b""
        self._off = 0

    def read(self, n: int) -> bytes:
        """Read up to n bytes; returns b"" once the end of the stream is reached."""
        if n < 0:
            raise ValueError("read length cannot be negative")
        n = min(n, _MAX_OFFSET - self._off)
        out = bytearray()
        while n > 0:
            pos = self._off % _OUT_STRIDE
            if pos == 0:
                self._node.counter = self._off // BLOCK_SIZE
                self._buf = compress_blocks(self._node)
            piece = self._buf[pos:pos + n]
            out += piece
            n -= len(piece)
            self._off += len(piece)
        return bytes(out)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        """Move to a new position in the stream and return it."""
        off = self._off
        if whence == io.SEEK_SET:
            if offset < 0:
                raise ValueError("seek position cannot be negative")
            off = offset & _U64
        elif whence == io.SEEK_CUR:
            if offset < 0 and -offset > off:
                raise ValueError("seek position cannot be negative")
            off = (off + offset) & _U64
        elif whence == io.SEEK_END:
            off = (offset - 1) & _U64
        else:
            raise ValueError(f"invalid whence: {whence}")
        self._off = off
        self._node.counter = off // BLOCK_SIZE
        if off % _OUT_STRIDE != 0:
            self._buf = compress_blocks(self._node)
        return off

    def tell(self) -> int:
        """Return the current position in the stream."""
        return self._off


class Hasher:
    """An incremental BLAKE3 hasher with a fixed digest size and optional key."""

    block_size = BLOCK_SIZE

    def __init__(self, size: int, key: bytes | None = None) -> None:
        if key is None:
            self._init_state(IV, 0, size)
        else:
            self._init_state(_key_words(key), FLAG_KEYED_HASH, size)

    @classmethod
    def _from_words(cls, key_words: Sequence[int], flags: int, size: int) -> Hasher:
        hasher = cls.__new__(cls)
        hasher._init_state(key_words, flags, size)
        return hasher

    def _init_state(self, key_words: Sequence[int], flags: int, size: int) -> None:
        if size < 0:
            raise ValueError("digest size cannot be negative")
        self._key = tuple(key_words)
        self._flags = flags
        self._size = size
        self._stack: list[tuple[int, ...] | None] = [None] * _STACK_DEPTH
        self._counter = 0
        self._buf = bytearray()

    @property
    def digest_size(self) -> int:
        """Number of bytes produced by digest()."""
        return self._size

    def _has_subtree_at(self, height: int) -> bool:
        return bool(self._counter >> height & 1)

    def _place_subtree(self, cv: Sequence[int], height: int) -> None:
        cv = tuple(cv)
        while self._has_subtree_at(height):
            cv = chaining_value(parent_node(self._stack[height], cv, self._key, self._flags))
            height += 1
        self._stack[height] = cv

    def merge_subtree(self, cv: Sequence[int], height: int, count: int) -> None:
        """Merge a precomputed subtree root covering `count` full buffers at `height`."""
        self._place_subtree(cv, height)
        self._counter += count

    def _root_node(self) -> Node:
        node = compress_buffer(bytes(self._buf), self._key, self._counter * MAX_SIMD, self._flags)
        for height in range(self._counter.bit_length()):
            if self._has_subtree_at(height):
                node = parent_node(self._stack[height], chaining_value(node), self._key, self._flags)
        node.flags |= FLAG_ROOT
        return node

    def write(self, data: bytes) -> int:
        """Absorb data and return the number of bytes consumed."""
        view = memoryview(data).cast("B")
        total = len(view)
        while view:
            if len(self._buf) == _BUF_SIZE:
                node = compress_buffer(
                    bytes(self._buf), self._key, self._counter * MAX_SIMD, self._flags
                )
                self._place_subtree(chaining_value(node), 0)
                self._counter += 1
                self._buf.clear()
            take = _BUF_SIZE - len(self._buf)
            self._buf += view[:take]
            view = view[take:]
        return total

    def update(self, data: bytes) -> None:
        """Absorb data."""
        self.write(data)

    def sum(self, prefix: bytes = b"") -> bytes:
        """Return prefix followed by the digest of everything written so far."""
        if self._size <= 64:
            out = words_to_bytes(compress_node(self._root_node()))[: self._size]
        else:
            out = self.xof().read(self._size)
        return bytes(prefix) + out

    def digest(self) -> bytes:
        """Return the digest of everything written so far."""
        return self.sum(b"")

    def hexdigest(self) -> str:
        """Return the digest as a hexadecimal string."""
        return self.digest().hex()

    def reset(self) -> None:
        """Discard everything written, keeping the key and digest size."""
        self._counter = 0
        self._buf.clear()

    def copy(self) -> Hasher:
        """Return an independent copy of this hasher's state."""
        other = Hasher._from_words(self._key, self._flags, self._size)
        other._stack = list(self._stack)
        other._counter = self._counter
        other._buf = bytearray(self._buf)
        return other

    def xof(self) -> OutputReader:
        """Return an output reader initialised with the current state."""
        return OutputReader(self._root_node())


def new(size: int, key: bytes | None = None) -> Hasher:
    """Return a hasher for the given digest size; keyed if key is given."""
    return Hasher(size, key)


def sum512(data: bytes) -> bytes:
    """Return the unkeyed BLAKE3 hash of data, 64 bytes long."""
    data = bytes(data)
    if len(data) <= BLOCK_SIZE:
        node = Node(
            cv=IV,
            block=bytes_to_words(data.ljust(BLOCK_SIZE, b"\x00")),
            counter=0,
            block_len=len(data),
            flags=FLAG_CHUNK_START | FLAG_CHUNK_END | FLAG_ROOT,
        )
    elif len(data) <= CHUNK_SIZE:
        node = compress_chunk(data, IV, 0, 0)
        node.flags |= FLAG_ROOT
    else:
        hasher = Hasher(64)
        hasher.write(data)
        node = hasher._root_node()
    return words_to_bytes(compress_node(node))


def sum256(data: bytes) -> bytes:
    """Return the unkeyed BLAKE3 hash of data, 32 bytes long."""
    return sum512(data)[:32]


def derive_key(length: int, context: str | bytes, src_key: bytes) -> bytes:
    """Derive `length` bytes of key material from a context string and source key."""
    if isinstance(context, str):
        context = context.encode("utf-8")
    context_hasher = Hasher._from_words(IV, FLAG_DERIVE_KEY_CONTEXT, 32)
    context_hasher.write(context)
    derivation_iv = _KEY_STRUCT.unpack(context_hasher.digest())
    material_hasher = Hasher._from_words(derivation_iv, FLAG_DERIVE_KEY_MATERIAL, 0)
    material_hasher.write(src_key)
    return material_hasher.xof().read(length)