"""Verified streaming: tree encodings of data that can be checked incrementally."""

from __future__ import annotations

import io
import struct
from typing import BinaryIO

from .guts import (
    CHUNK_SIZE,
    FLAG_ROOT,
    IV,
    MAX_SIMD,
    Node,
    chaining_value,
    compress_buffer,
    parent_node,
)

HEADER_SIZE = 8
CV_SIZE = 32
PARENT_SIZE = 2 * CV_SIZE

_PER = MAX_SIMD * CHUNK_SIZE
_CV_STRUCT = struct.Struct("<8I")
_LEN_STRUCT = struct.Struct("<Q")


def _group_size(group: int) -> int:
    if group < 0:
        raise ValueError("group cannot be negative")
    return CHUNK_SIZE << group


def _bytes_to_cv(data: bytes) -> tuple[int, ...]:
    return _CV_STRUCT.unpack(bytes(data[:CV_SIZE]))


def _cv_to_bytes(cv: tuple[int, ...]) -> bytes:
    return _CV_STRUCT.pack(*cv)


def _root_cv(root: bytes) -> tuple[int, ...]:
    if len(root) != CV_SIZE:
        raise ValueError(f"root must be {CV_SIZE} bytes, got {len(root)}")
    return _bytes_to_cv(root)


def _split_point(buf_len: int) -> int:
    """Largest power of two strictly less than buf_len."""
    return 1 << ((buf_len - 1).bit_length() - 1)


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    out = bytearray()
    while len(out) < n:
        piece = stream.read(n - len(out))
        if not piece:
            raise EOFError(f"expected {n} bytes, got {len(out)}")
        out += piece
    return bytes(out)


def _compress_group(data: bytes, counter: int) -> Node:
    """Hash a run of chunks starting at chunk `counter` into its subtree root node."""
    view = memoryview(data)
    pieces = [bytes(view[off:off + _PER]) for off in range(0, len(view), _PER)] or [b""]
    stack: dict[int, tuple[int, ...]] = {}
    pushed = 0
    for piece in pieces[:-1]:
        cv = chaining_value(compress_buffer(piece, IV, counter + pushed * MAX_SIMD, 0))
        height = 0
        while pushed >> height & 1:
            cv = chaining_value(parent_node(stack[height], cv, IV, 0))
            height += 1
        stack[height] = cv
        pushed += 1
    node = compress_buffer(pieces[-1], IV, counter + pushed * MAX_SIMD, 0)
    for height in range(pushed.bit_length()):
        if pushed >> height & 1:
            node = parent_node(stack[height], chaining_value(node), IV, 0)
    return node


class _Discard:
    def write(self, data: bytes) -> int:
        return len(data)


def encoded_size(data_len: int, group: int, outboard: bool) -> int:
    """Return the size of an encoding of data_len bytes."""
    group_size = _group_size(group)
    size = HEADER_SIZE
    if data_len > 0:
        groups = (data_len + group_size - 1) // group_size
        size += (2 * groups - 2) * CV_SIZE
    if not outboard:
        size += data_len
    return size


def encode(dst: BinaryIO, data: BinaryIO, data_len: int, group: int, outboard: bool) -> bytes:
    """Write the tree encoding of data_len bytes read from data into dst; return the root.

    dst must be seekable: it is written in pre-order, not sequentially. When
    outboard is false the content is interleaved with the tree hashes.
    """
    group_size = _group_size(group)
    counter = 0

    def write(piece: bytes, off: int) -> None:
        dst.seek(off)
        dst.write(piece)

    def rec(buf_len: int, flags: int, off: int) -> tuple[int, tuple[int, ...]]:
        nonlocal counter
        if buf_len <= group_size:
            chunk = _read_exact(data, buf_len)
            if not outboard:
                write(chunk, off)
            node = _compress_group(chunk, counter)
            counter += buf_len // CHUNK_SIZE
            node.flags |= flags
            return 0, chaining_value(node)
        mid = _split_point(buf_len)
        left_children, left = rec(mid, 0, off + PARENT_SIZE)
        left_len = left_children * CV_SIZE
        if not outboard:
            left_len += (mid // group_size) * group_size
        right_children, right = rec(buf_len - mid, 0, off + PARENT_SIZE + left_len)
        write(_cv_to_bytes(left), off)
        write(_cv_to_bytes(right), off + CV_SIZE)
        cv = chaining_value(parent_node(left, right, IV, flags))
        return 2 + left_children + right_children, cv

    write(_LEN_STRUCT.pack(data_len), 0)
    _, root = rec(data_len, FLAG_ROOT, HEADER_SIZE)
    return _cv_to_bytes(root)


def decode(
    dst,
    data: BinaryIO,
    outboard: BinaryIO | None,
    group: int,
    root: bytes,
) -> bool:
    """Stream verified content from data (and outboard tree data) into dst.

    Returns False as soon as verification fails; content verified up to that
    point has already been written. Pass outboard=None for interleaved data.
    """
    tree = data if outboard is None else outboard
    group_size = _group_size(group)
    counter = 0

    def rec(cv: tuple[int, ...], buf_len: int, flags: int) -> bool:
        nonlocal counter
        if buf_len <= group_size:
            chunk = _read_exact(data, buf_len)
            node = _compress_group(chunk, counter)
            counter += buf_len // CHUNK_SIZE
            node.flags |= flags
            valid = cv == chaining_value(node)
            if valid:
                dst.write(chunk)
            return valid
        parent = _read_exact(tree, PARENT_SIZE)
        left, right = _bytes_to_cv(parent[:CV_SIZE]), _bytes_to_cv(parent[CV_SIZE:])
        mid = _split_point(buf_len)
        return (
            chaining_value(parent_node(left, right, IV, flags)) == cv
            and rec(left, mid, 0)
            and rec(right, buf_len - mid, 0)
        )

    root_cv = _root_cv(root)
    (data_len,) = _LEN_STRUCT.unpack(_read_exact(tree, HEADER_SIZE))
    return rec(root_cv, data_len, FLAG_ROOT)


def encode_buf(data: bytes, group: int, outboard: bool) -> tuple[bytes, bytes]:
    """Return the encoding of data and its root (its 256-bit BLAKE3 hash)."""
    data = bytes(data)
    out = io.BytesIO(bytes(encoded_size(len(data), group, outboard)))
    root = encode(out, io.BytesIO(data), len(data), group, outboard)
    return out.getvalue(), root


def verify_buf(data: bytes, outboard: bytes | None, group: int, root: bytes) -> bool:
    """Check an encoding against root; pass outboard=None for interleaved data."""
    data_stream = io.BytesIO(bytes(data))
    tree_stream = None if outboard is None else io.BytesIO(bytes(outboard))
    try:
        ok = decode(_Discard(), data_stream, tree_stream, group, root)
    except EOFError:
        return False
    if not ok or data_stream.read(1):
        return False
    return tree_stream is None or not tree_stream.read(1)


def extract_slice(
    dst,
    data: BinaryIO,
    outboard: BinaryIO | None,
    group: int,
    offset: int,
    length: int,
) -> None:
    """Write the slice encoding covering [offset, offset+length) to dst.

    For an outboard encoding, data holds only the chunk groups that the slice
    touches. Raises ValueError if the slice extends past the end of the data.
    """
    combined = outboard is None
    tree = data if combined else outboard
    group_size = _group_size(group)
    end = offset + length

    def copy(stream: BinaryIO, n: int, keep: bool) -> None:
        piece = _read_exact(stream, n)
        if keep:
            dst.write(piece)

    def rec(pos: int, buf_len: int) -> None:
        in_slice = pos < end and offset < pos + buf_len
        if buf_len <= group_size:
            if combined or in_slice:
                copy(data, buf_len, in_slice)
            return
        copy(tree, PARENT_SIZE, in_slice)
        mid = _split_point(buf_len)
        rec(pos, mid)
        rec(pos + mid, buf_len - mid)

    header = _read_exact(tree, HEADER_SIZE)
    dst.write(header)
    (data_len,) = _LEN_STRUCT.unpack(header)
    if data_len < end:
        raise ValueError("invalid slice length")
    rec(0, data_len)


def decode_slice(dst, data: BinaryIO, group: int, offset: int, length: int, root: bytes) -> bool:
    """Stream the verified bytes of a slice encoding into dst.

    Returns False if verification fails; raises ValueError if the encoded data
    is shorter than offset + length.
    """
    group_size = _group_size(group)
    end = offset + length

    def rec(cv: tuple[int, ...], pos: int, buf_len: int, flags: int) -> bool:
        in_slice = pos < end and offset < pos + buf_len
        if not in_slice:
            return True
        if buf_len <= group_size:
            chunk = _read_exact(data, buf_len)
            node = _compress_group(chunk, pos // CHUNK_SIZE)
            node.flags |= flags
            valid = cv == chaining_value(node)
            if valid:
                lo = max(offset - pos, 0)
                hi = min(end - pos, buf_len)
                dst.write(chunk[lo:hi])
            return valid
        parent = _read_exact(data, PARENT_SIZE)
        left, right = _bytes_to_cv(parent[:CV_SIZE]), _bytes_to_cv(parent[CV_SIZE:])
        mid = _split_point(buf_len)
        return (
            chaining_value(parent_node(left, right, IV, flags)) == cv
            and rec(left, pos, mid, 0)
            and rec(right, pos + mid, buf_len - mid, 0)
        )

    root_cv = _root_cv(root)
    (data_len,) = _LEN_STRUCT.unpack(_read_exact(data, HEADER_SIZE))
    if data_len < end:
        raise ValueError("invalid slice length")
    return rec(root_cv, 0, data_len, FLAG_ROOT)


def verify_slice(data: bytes, group: int, offset: int, length: int, root: bytes) -> bytes | None:
    """Verify a slice encoding and return the slice's bytes, or None if it is invalid."""
    stream = io.BytesIO(bytes(data))
    out = io.BytesIO()
    try:
        ok = decode_slice(out, stream, group, offset, length, root)
    except (EOFError, ValueError):
        return None
    if not ok or stream.read(1):
        return None
    return out.getvalue()


def verify_chunk(chunks: bytes, outboard: bytes, group: int, offset: int, root: bytes) -> bool:
    """Verify a run of chunk groups starting at offset against a full outboard encoding."""
    group_size = _group_size(group)
    chunk_stream = io.BytesIO(bytes(chunks))
    tree_stream = io.BytesIO(bytes(outboard))
    length = len(chunks)
    end = offset + length

    def nodes_within(buf_len: int) -> int:
        n = buf_len // group_size
        if buf_len % group_size == 0:
            n -= 1
        return n

    def rec(cv: tuple[int, ...], pos: int, buf_len: int, flags: int) -> bool:
        in_slice = pos < end and offset < pos + buf_len
        if buf_len <= group_size:
            if not in_slice:
                return True
            node = _compress_group(chunk_stream.read(group_size), pos // CHUNK_SIZE)
            node.flags |= flags
            return cv == chaining_value(node)
        if not in_slice:
            tree_stream.read(PARENT_SIZE * nodes_within(buf_len))
            return True
        left = _bytes_to_cv(tree_stream.read(CV_SIZE))
        right = _bytes_to_cv(tree_stream.read(CV_SIZE))
        mid = _split_point(buf_len)
        return (
            chaining_value(parent_node(left, right, IV, flags)) == cv
            and rec(left, pos, mid, 0)
            and rec(right, pos + mid, buf_len - mid, 0)
        )

    root_cv = _root_cv(root)
    if len(outboard) < HEADER_SIZE:
        return False
    (data_len,) = _LEN_STRUCT.unpack(tree_stream.read(HEADER_SIZE))
    if data_len < end or len(outboard) - HEADER_SIZE != PARENT_SIZE * nodes_within(data_len):
        return False
    return rec(root_cv, 0, data_len, FLAG_ROOT)