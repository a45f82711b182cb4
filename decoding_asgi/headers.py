"""
HTTP Content-Encoding / Accept-Encoding header parsing and merging utilities.
"""
import re
from functools import lru_cache
from typing import Iterable

# The encodings every middleware instance can decode, in the order they are
# advertised when no Accept-Encoding has been set yet.
BUILTIN_ENCODINGS: tuple[str, ...] = ("br", "gzip", "zstd")

_WHITESPACE = re.compile(r"\s+")


def split_encoding_header(raw: str | None) -> list[str]:
    """
    Splits a comma-separated encoding header (e.g., "gzip, zstd") into its
    tokens, in the order they appear.

    All whitespace is removed first. Tokens are neither lowercased nor
    deduplicated, and an empty header yields no tokens at all.
    """
    if not raw:
        return []
    compact = _WHITESPACE.sub("", raw)
    if not compact:
        return []
    return compact.split(",")


def join_with_comma_space(tokens: Iterable[str]) -> str:
    return ", ".join(tokens)


@lru_cache(maxsize=128)
def merge_accept_encoding(current: str, supported: tuple[str, ...]) -> str:
    """
    Computes the Accept-Encoding value to send, given the value already set on
    the response (possibly empty) and the encodings we can decode.

    With nothing set yet, the supported list is written as is. Otherwise the
    two are merged as a set and sorted, so "gzip" merged with
    ("br", "gzip", "zstd") gives "br, gzip, zstd".

    Results are LRU-cached for performance.
    """
    existing = split_encoding_header(current)
    if not existing:
        return join_with_comma_space(supported)

    merged = set(existing)
    merged.update(supported)
    return join_with_comma_space(sorted(merged))
