import io
import struct

import pytest

from b3tree import bao
from b3tree.hasher import new, sum256

EMPTY_ROOT = "af1349b9f5f9a1a6a0404dea36dcc9499bcb25c9adc112b7cc9a93cae41f3262"
DATA_LEN = 5 * 1024 + 300


def _data(n):
    return new(0).xof().read(n)


@pytest.fixture(scope="module")
def data():
    return _data(DATA_LEN)


def _flip(buf, index):
    out = bytearray(buf)
    out[index] ^= 1
    return bytes(out)


def test_empty_interleaved():
    enc, root = bao.encode_buf(b"", 0, False)
    assert root.hex() == EMPTY_ROOT
    assert enc.hex() == "0000000000000000"
    assert bao.verify_buf(enc, None, 0, root)


def test_empty_outboard():
    enc, root = bao.encode_buf(b"", 0, True)
    assert root.hex() == EMPTY_ROOT
    assert enc.hex() == "0000000000000000"
    assert bao.verify_buf(b"", enc, 0, root)


def test_root_is_blake3_hash(data):
    _, root = bao.encode_buf(data, 0, False)
    assert root == sum256(data)
    assert sum256(b"").hex() == EMPTY_ROOT


@pytest.mark.parametrize(
    "data_len,group,outboard,expected",
    [
        (0, 0, False, 8),
        (0, 0, True, 8),
        (2048, 0, False, 8 + 64 + 2048),
        (2048, 0, True, 8 + 64),
        (2048, 1, True, 8),
        (3000, 0, True, 8 + 4 * 32),
    ],
)
def test_encoded_size(data_len, group, outboard, expected):
    assert bao.encoded_size(data_len, group, outboard) == expected


@pytest.mark.parametrize("outboard", [False, True])
@pytest.mark.parametrize("group", [0, 1, 2])
def test_encoding_length_matches_encoded_size(data, group, outboard):
    enc, _ = bao.encode_buf(data, group, outboard)
    assert len(enc) == bao.encoded_size(len(data), group, outboard)


@pytest.mark.parametrize("group", [0, 1, 2])
def test_interleaved(data, group):
    enc, root = bao.encode_buf(data, group, False)
    assert bao.verify_buf(enc, None, group, root)
    assert not bao.verify_buf(enc, None, group, _flip(root, 0))
    assert not bao.verify_buf(_flip(enc, 0), None, group, root)
    assert not bao.verify_buf(_flip(enc, 8), None, group, root)
    assert not bao.verify_buf(_flip(enc, len(enc) - 1), None, group, root)
    assert not bao.verify_buf(enc + bytes([1, 2, 3]), None, group, root)


@pytest.mark.parametrize("group", [0, 1, 2])
def test_outboard(data, group):
    enc, root = bao.encode_buf(data, group, True)
    assert bao.verify_buf(data, enc, group, root)
    assert not bao.verify_buf(data, enc, group, _flip(root, 0))
    assert not bao.verify_buf(data, _flip(enc, 0), group, root)
    assert not bao.verify_buf(data, _flip(enc, 8), group, root)
    assert not bao.verify_buf(data + b"\x00", enc, group, root)


def _abao_input(n):
    words = (n + 3) // 4
    return struct.pack(f"<{words}I", *range(1, words + 1))[:n]


@pytest.mark.parametrize(
    "input_len,expected",
    [
        (0, "af1349b9f5f9a1a6a0404dea36dcc9499bcb25c9adc112b7cc9a93cae41f3262"),
        (1, "48fc721fbbc172e0925fa27af1671de225ba927134802998b10a1568a188652b"),
        (1023, "15f8c1ae1049fe7e837186612c8ce732e66835841a4569b71e4ac3e3d3411b90"),
        (1024, "f749c19181983b839cd97fe121cebaf076bc951e8c8e6d64accfedad5951ec22"),
        (1025, "3613596275c4ea790774dedf20835b2daf86cacc892feef6ce720c121572f1f9"),
        (16383, "f0970fbfe2f1c5145fa6aa31833779803d5c53743a8443ed1395218f511834ba"),
        (16384, "b318758645c4467406c829a5f3da7cab00010fccccf4b7c314525cd85e2d0af8"),
        (16385, "12a6a6b0554e7f3eed485f668bfd3b37382a2beee5e7ed5594c4a91c4c70f4aa"),
        (32768, "8008de557073cab60f851191359ad9dc1afe9dc6152668ee01825c56ac5a754e"),
        (49152, "91823357fefc308b57bb85ebed1d1edeba3c355e804dc63fa98fcb82554b1566"),
        (180224, "4742cbae9485ce1b86ab359c1a84e203f819795d018b22a5c70c5c4577dd732e"),
        (212992, "760c549edfe95c734b1d6a9b846d81692ed3ca022b541442949a0e42fe570df2"),
    ],
)
def test_chunk_group_vectors(input_len, expected):
    _, root = bao.encode_buf(_abao_input(input_len), 4, False)
    assert root.hex() == expected


def test_streaming_decode(data):
    enc, root = bao.encode_buf(data, 0, False)
    out = io.BytesIO()
    assert bao.decode(out, io.BytesIO(enc), None, 0, root)
    assert out.getvalue() == data


def test_streaming_bad_root_writes_nothing(data):
    enc, _ = bao.encode_buf(data, 0, False)
    out = io.BytesIO()
    assert not bao.decode(out, io.BytesIO(enc), None, 0, bytes(32))
    assert out.getvalue() == b""


def test_streaming_corruption_writes_only_verified_prefix(data):
    enc, root = bao.encode_buf(data, 0, False)
    corrupted = _flip(enc, len(enc) // 2)
    out = io.BytesIO()
    assert not bao.decode(out, io.BytesIO(corrupted), None, 0, root)
    written = out.getvalue()
    assert len(written) < len(data)
    assert written == data[: len(written)]


def test_decode_outboard_stream(data):
    enc, root = bao.encode_buf(data, 1, True)
    out = io.BytesIO()
    assert bao.decode(out, io.BytesIO(data), io.BytesIO(enc), 1, root)
    assert out.getvalue() == data


def test_encode_to_stream_matches_encode_buf(data):
    expected, expected_root = bao.encode_buf(data, 0, False)
    dst = io.BytesIO()
    root = bao.encode(dst, io.BytesIO(data), len(data), 0, False)
    assert root == expected_root
    assert dst.getvalue() == expected


def test_encode_short_input_raises(data):
    with pytest.raises(EOFError):
        bao.encode(io.BytesIO(), io.BytesIO(data), len(data) + 10, 0, False)


SLICES = [
    (0, DATA_LEN),
    (0, 1024),
    (1024, 1024),
    (0, 10),
    (1020, 10),
    (1030, DATA_LEN - 1030),
]


@pytest.mark.parametrize("offset,length", SLICES)
def test_slice_combined(data, offset, length):
    enc, root = bao.encode_buf(data, 0, False)
    out = io.BytesIO()
    bao.extract_slice(out, io.BytesIO(enc), None, 0, offset, length)
    assert bao.verify_slice(out.getvalue(), 0, offset, length, root) == data[offset:offset + length]


@pytest.mark.parametrize("offset,length", SLICES)
def test_slice_outboard(data, offset, length):
    enc, root = bao.encode_buf(data, 0, True)
    start = (offset // 1024) * 1024
    end = min(((offset + length + 1023) // 1024) * 1024, len(data))
    out = io.BytesIO()
    bao.extract_slice(out, io.BytesIO(data[start:end]), io.BytesIO(enc), 0, offset, length)
    assert bao.verify_slice(out.getvalue(), 0, offset, length, root) == data[offset:offset + length]


def test_slice_bad_root_rejected(data):
    enc, root = bao.encode_buf(data, 0, False)
    out = io.BytesIO()
    bao.extract_slice(out, io.BytesIO(enc), None, 0, 1024, 1024)
    assert bao.verify_slice(out.getvalue(), 0, 1024, 1024, _flip(root, 0)) is None


def test_slice_trailing_data_rejected(data):
    enc, root = bao.encode_buf(data, 0, False)
    out = io.BytesIO()
    bao.extract_slice(out, io.BytesIO(enc), None, 0, 0, 10)
    assert bao.verify_slice(out.getvalue() + b"\x01", 0, 0, 10, root) is None


def test_extract_slice_invalid_length(data):
    enc, _ = bao.encode_buf(data, 0, False)
    with pytest.raises(ValueError, match="invalid slice length"):
        bao.extract_slice(io.BytesIO(), io.BytesIO(enc), None, 0, DATA_LEN, 1)


def test_decode_slice_invalid_length(data):
    enc, root = bao.encode_buf(data, 0, False)
    with pytest.raises(ValueError, match="invalid slice length"):
        bao.decode_slice(io.BytesIO(), io.BytesIO(enc), 0, 0, DATA_LEN + 1, root)


def test_verify_chunk(data):
    enc, root = bao.encode_buf(data, 0, True)
    chunk = data[1024:2048]
    assert bao.verify_chunk(chunk, enc, 0, 1024, root)
    assert not bao.verify_chunk(_flip(chunk, 0), enc, 0, 1024, root)
    assert not bao.verify_chunk(chunk, enc, 0, 0, root)


def test_verify_chunk_last_partial_group(data):
    enc, root = bao.encode_buf(data, 0, True)
    tail = data[5 * 1024:]
    assert bao.verify_chunk(tail, enc, 0, 5 * 1024, root)


def test_verify_chunk_bad_outboard(data):
    enc, root = bao.encode_buf(data, 0, True)
    chunk = data[:1024]
    assert not bao.verify_chunk(chunk, enc[:4], 0, 0, root)
    assert not bao.verify_chunk(chunk, enc + b"\x00", 0, 0, root)
    assert not bao.verify_chunk(chunk, enc, 0, DATA_LEN, root)


def test_bad_root_length_rejected(data):
    enc, _ = bao.encode_buf(data, 0, False)
    with pytest.raises(ValueError):
        bao.decode(io.BytesIO(), io.BytesIO(enc), None, 0, b"\x00" * 31)