# b3tree

An implementation of the BLAKE3 hash function written in plain Python, with no
third-party dependencies. It provides:

- streaming hashing with any digest size, keyed hashing and key derivation;
- an extendable, seekable output stream (XOF);
- hashing of large files in segments spread over a thread pool;
- Bao verified streaming: encoding, decoding, slicing and chunk verification,
  with configurable chunk-group sizes.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Hashing

```python
from b3tree.hasher import Hasher, new, sum256, sum512, derive_key

h = new(32, None)            # 32-byte digest, unkeyed
h.update(b"hello ")
h.update(b"world")
print(h.hexdigest())

sum256(b"hello world")       # 32-byte digest in one call
sum512(b"hello world")       # 64-byte digest in one call

key = bytes(32)              # any 32-byte key gives a keyed hash
keyed = Hasher(32, key)
keyed.update(b"message")
tag = keyed.digest()

subkey = derive_key(32, "example.com 2019-12-25 16:18:03 session tokens v1", b"input key material")
```

A key that is not 32 bytes long raises `ValueError`, as does a negative digest
size. `Hasher.write(data)` absorbs data and returns the number of bytes taken;
`Hasher.update(data)` does the same without a return value. `Hasher.reset()`
clears the input while keeping the key and digest size, `Hasher.copy()` gives
an independent copy of the state, and `Hasher.sum(prefix)` returns `prefix`
followed by the digest. `Hasher.digest_size` is the digest length and
`Hasher.block_size` is 64. Digests longer than 64 bytes are taken from the
extendable output.

## Extendable output

```python
import os
from b3tree.hasher import new

xof = new(0, None).xof()
first = xof.read(100)
xof.seek(1000, os.SEEK_SET)  # os.SEEK_SET, os.SEEK_CUR or os.SEEK_END
later = xof.read(64)
position = xof.tell()
```

The stream holds 2**64 - 1 bytes. A read that would run past its end returns
only the bytes that remain, and `b""` once the end is reached. Seeking to a
negative position, or with any other `whence`, raises `ValueError`.

## Hashing a file in parallel

```python
from b3tree.hasher import new
from b3tree.parallel import add_file_parallel

h = new(32, None)
add_file_parallel(h, "large.bin", None, 0, 0)   # default segment size and worker count
print(h.hexdigest())
```

The file is cut into segments of `2**parallel_bits` bytes (`2**19` when
`parallel_bits` is 0, and never less than 16 KiB); each segment but the last is
hashed into a subtree on a thread pool with `workers` threads (one per CPU when
`workers` is 0 or less), and the subtrees are merged into the hasher. A file no
larger than one segment is simply written to the hasher. For a keyed hash, pass
the same 32-byte key both to the hasher and as `key`.

`one_core_cv(buf, base_chunk_counter, key_words, flags)` hashes one
chunk-aligned buffer into a subtree and returns its chaining value, top node,
height, last chunk index and number of full 16 KiB buffers;
`Hasher.merge_subtree` adds such a subtree to a hasher.

## Bao verified streaming

```python
from b3tree import bao

data = b"some content" * 10000
encoding, root = bao.encode_buf(data, 0, False)   # combined encoding, standard chunk groups
assert bao.verify_buf(encoding, None, 0, root)

outboard, root = bao.encode_buf(data, 0, True)    # tree only; the content is kept apart
assert bao.verify_buf(data, outboard, 0, root)
```

The `group` argument sets how many 1 KiB chunks make up a group, as a power of
two; use `0` for standard Bao. The root is the 32-byte BLAKE3 hash of the data.
`bao.encoded_size` reports how large an encoding will be.

For file-like objects use `bao.encode(dst, data, data_len, group, outboard)`,
where `dst` must be seekable because it is written in pre-order, and
`bao.decode(dst, data, outboard, group, root)`, which writes verified content to
`dst` and returns `False` at the first failure. Truncated input raises
`EOFError`.

To verify part of the content, `bao.extract_slice` writes a slice encoding for
`offset` and `length`, `bao.decode_slice` streams the verified bytes of a slice
encoding, and `bao.verify_slice` returns those bytes, or `None` if the encoding
is invalid. A slice that reaches past the end of the data raises `ValueError`
in `extract_slice` and `decode_slice`. `bao.verify_chunk` checks a run of chunk
groups at a given offset against a full outboard encoding.

## Low-level access

`b3tree.guts` exposes the compression function and tree nodes (`Node`,
`compress_node`, `chaining_value`, `parent_node`, `compress_chunk`,
`compress_buffer`, `compress_blocks`, `merge_subtrees`, `bytes_to_words`,
`words_to_bytes`) and the flag and size constants, for building custom tree
modes.

## What it does not do

The package is a library only: it installs no command-line tool for hashing
files. It is written entirely in Python, so it is far slower than compiled
BLAKE3 implementations; the parallel file hashing uses threads and gains
little speed from them.