"""BLAKE3 hashing, extendable output, parallel file hashing and Bao verified streaming."""

__version__ = "0.1.0"
__all__ = ["bao", "guts", "hasher", "parallel"]