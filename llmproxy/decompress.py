"""Content-Encoding aware body decoding for upstream responses (gzip, deflate, br)."""

import logging
import zlib
from typing import AsyncIterable, AsyncIterator, Optional

import brotli

logger = logging.getLogger(__name__)


class DecompressionError(Exception):
    """Upstream body could not be decoded with its declared Content-Encoding."""


class IdentityDecoder:
    def decode(self, data: bytes) -> bytes:
        return data

    def flush(self) -> bytes:
        return b""


class GzipDecoder:
    def __init__(self) -> None:
        # 16 + MAX_WBITS: expect a gzip header and trailer
        self._obj = zlib.decompressobj(16 + zlib.MAX_WBITS)

    def decode(self, data: bytes) -> bytes:
        try:
            return self._obj.decompress(data)
        except zlib.error as e:
            raise DecompressionError(f"error decoding gzip body: {e}") from e

    def flush(self) -> bytes:
        try:
            return self._obj.flush()
        except zlib.error as e:
            raise DecompressionError(f"error decoding gzip body: {e}") from e


class DeflateDecoder:
    """
    Raw deflate stream. Some servers send zlib-wrapped data under the same name,
    so the first chunk decides which of the two it is.
    """

    def __init__(self) -> None:
        self._first_attempt = True
        self._obj = zlib.decompressobj()

    def decode(self, data: bytes) -> bytes:
        if not data:
            return b""
        was_first_attempt = self._first_attempt
        self._first_attempt = False
        try:
            return self._obj.decompress(data)
        except zlib.error as e:
            if was_first_attempt:
                self._obj = zlib.decompressobj(-zlib.MAX_WBITS)
                return self.decode(data)
            raise DecompressionError(f"error decoding deflate body: {e}") from e

    def flush(self) -> bytes:
        try:
            return self._obj.flush()
        except zlib.error as e:
            raise DecompressionError(f"error decoding deflate body: {e}") from e


class BrotliDecoder:
    def __init__(self) -> None:
        self._obj = brotli.Decompressor()

    def decode(self, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            return self._obj.process(data)
        except brotli.error as e:
            raise DecompressionError(f"error decoding brotli body: {e}") from e

    def flush(self) -> bytes:
        return b""


DECODERS = {
    "gzip": GzipDecoder,
    "x-gzip": GzipDecoder,
    "deflate": DeflateDecoder,
    "br": BrotliDecoder,
    "identity": IdentityDecoder,
}


def get_decoder(content_encoding: Optional[str]):
    """
    Pick a decoder for a Content-Encoding header value.

    Missing or unrecognized encodings read the body as-is.
    """
    encoding = (content_encoding or "").strip().lower()
    if not encoding:
        return IdentityDecoder()
    decoder_cls = DECODERS.get(encoding)
    if decoder_cls is None:
        logger.warning(f"Unknown Content-Encoding '{content_encoding}', reading body as-is")
        return IdentityDecoder()
    return decoder_cls()


def decompress_body(data: bytes, content_encoding: Optional[str]) -> bytes:
    """Decode a complete body."""
    decoder = get_decoder(content_encoding)
    return decoder.decode(data) + decoder.flush()


async def iter_decompressed(
    chunks: AsyncIterable[bytes], content_encoding: Optional[str]
) -> AsyncIterator[bytes]:
    """Decode a body incrementally as raw chunks arrive."""
    decoder = get_decoder(content_encoding)
    async for chunk in chunks:
        decoded = decoder.decode(chunk)
        if decoded:
            yield decoded
    tail = decoder.flush()
    if tail:
        yield tail
