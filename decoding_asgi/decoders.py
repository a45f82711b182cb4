"""
Request body decoders for Content-Encoding.

Every decoder turns an ASGI ``receive`` callable carrying a compressed body
into one carrying the decompressed body. Decoders are chained, one per
Content-Encoding token, so stacked encodings unwind one layer at a time.

See: https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/Content-Encoding
"""
import zlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping

import brotli
from starlette.requests import ClientDisconnect
from starlette.types import Message, Receive, Scope

try:
    from compression import zstd
except ImportError:
    from backports import zstd

from .headers import BUILTIN_ENCODINGS

# Bytes that must be seen before a gzip member header can be judged valid.
GZIP_HEADER_SIZE = 10
# Frame magic number plus the smallest possible frame header.
ZSTD_HEADER_SIZE = 6

DecodeHandler = Callable[[Scope, Receive], Awaitable[Receive]]


class DecodeError(Exception):
    """
    Raised when a request body cannot be decoded.

    The message is the underlying codec failure, prefixed with the encoding
    name (e.g., "gzip: Error -3 while decompressing data: incorrect header
    check").
    """


class Decompressor:
    def decompress(self, data: bytes) -> bytes:
        raise NotImplementedError()  # pragma: nocover

    def flush(self) -> bytes:
        raise NotImplementedError()  # pragma: nocover


class GZipDecompressor(Decompressor):
    """
    Handle 'gzip' decoding. Concatenated members are decoded back to back.
    """

    def __init__(self) -> None:
        self.decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)

    def decompress(self, data: bytes) -> bytes:
        output = []
        while data:
            if self.decompressor.eof:
                self.decompressor = zlib.decompressobj(zlib.MAX_WBITS | 16)
            try:
                output.append(self.decompressor.decompress(data))
            except zlib.error as exc:
                raise DecodeError(f"gzip: {exc}") from exc
            data = self.decompressor.unused_data if self.decompressor.eof else b""
        return b"".join(output)

    def flush(self) -> bytes:
        try:
            tail = self.decompressor.flush()
        except zlib.error as exc:  # pragma: nocover
            raise DecodeError(f"gzip: {exc}") from exc
        # An empty body is not a gzip stream either.
        if not self.decompressor.eof:
            raise DecodeError("gzip: unexpected end of stream")
        return tail


class ZstdDecompressor(Decompressor):
    """
    Handle 'zstd' decoding. Consecutive frames are decoded back to back.

    ``options`` is passed as is to every ``zstd.ZstdDecompressor`` created,
    e.g. ``{zstd.DecompressionParameter.window_log_max: 20}``.
    """

    def __init__(self, options: Mapping[int, int] | None = None) -> None:
        self.options = dict(options) if options else None
        self.decompressor = zstd.ZstdDecompressor(options=self.options)
        self.in_frame = False

    def decompress(self, data: bytes) -> bytes:
        output = []
        while data:
            if self.decompressor.eof:
                self.decompressor = zstd.ZstdDecompressor(options=self.options)
            try:
                output.append(self.decompressor.decompress(data))
            except zstd.ZstdError as exc:
                raise DecodeError(f"zstd: {exc}") from exc
            self.in_frame = not self.decompressor.eof
            data = self.decompressor.unused_data if self.decompressor.eof else b""
        return b"".join(output)

    def flush(self) -> bytes:
        if self.in_frame:
            raise DecodeError("zstd: unexpected end of stream")
        return b""


class BrotliDecompressor(Decompressor):
    """
    Handle 'br' decoding.

    Requires `pip install Brotli`. See: https://github.com/google/brotli
    """

    def __init__(self) -> None:
        self.decompressor = brotli.Decompressor()

    def decompress(self, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            return self.decompressor.process(data)
        except brotli.error as exc:
            raise DecodeError(f"br: {exc}") from exc

    def flush(self) -> bytes:
        if not self.decompressor.is_finished():
            raise DecodeError("br: unexpected end of stream")
        return b""


class DecodingStream:
    """
    An ASGI ``receive`` callable that yields the decompressed body of the
    ``receive`` it wraps. Messages other than ``http.request`` (such as
    ``http.disconnect``) are passed along untouched.
    """

    def __init__(self, receive: Receive, decompressor: Decompressor) -> None:
        self.receive = receive
        self.decompressor = decompressor
        self.pending: list[Message] = []
        self.complete = False

    async def prime(self, size: int) -> None:
        """
        Reads ahead until at least ``size`` compressed bytes were decoded or
        the body ended, so a malformed header fails here rather than in the
        application. The decoded messages are replayed by ``__call__``.
        """
        seen = 0
        while seen < size and not self.complete:
            message = await self.receive()
            if message["type"] != "http.request":
                self.pending.append(message)
                return
            seen += len(message.get("body", b""))
            self.pending.append(self.decode(message))

    def decode(self, message: Message) -> Message:
        body = self.decompressor.decompress(message.get("body", b""))
        more_body = message.get("more_body", False)
        if not more_body:
            body += self.decompressor.flush()
            self.complete = True
        return {"type": "http.request", "body": body, "more_body": more_body}

    async def __call__(self) -> Message:
        if self.pending:
            return self.pending.pop(0)
        if self.complete:
            return await self.receive()

        while True:
            message = await self.receive()
            if message["type"] != "http.request":
                return message
            decoded = self.decode(message)
            # Skip chunks that only fed the decompressor's internal buffers.
            if decoded["body"] or not decoded["more_body"]:
                return decoded


class StreamDecoder:
    """
    Decode capability wrapping the body in a ``DecodingStream``.

    With a ``prime_size``, the stream is validated eagerly: the first bytes
    are decoded before the application runs. Without one, every error is
    deferred until the application reads the body.
    """

    def __init__(
        self,
        decompressor_factory: Callable[[], Decompressor],
        prime_size: int = 0,
    ) -> None:
        self.decompressor_factory = decompressor_factory
        self.prime_size = prime_size

    async def __call__(self, scope: Scope, receive: Receive) -> Receive:
        stream = DecodingStream(receive, self.decompressor_factory())
        if self.prime_size:
            await stream.prime(self.prime_size)
        return stream


async def identity(scope: Scope, receive: Receive) -> Receive:
    return receive


@dataclass(frozen=True)
class Decoder:
    """
    A custom decoder for a user defined Content-Encoding.

    ``handler`` is awaited with the request scope and the current ``receive``
    when ``encoding`` matches a Content-Encoding token. It returns the
    ``receive`` to use from then on, or raises ``DecodeError``.
    """

    encoding: str
    handler: DecodeHandler


class CodecRegistry:
    """
    Maps Content-Encoding tokens to decode capabilities.

    Built-in encodings are matched first, then custom decoders in the order
    they were registered. A custom decoder for a built-in token is never used.
    """

    def __init__(
        self,
        decoders: Iterable[Decoder] = (),
        zstd_options: Mapping[int, int] | None = None,
    ) -> None:
        self.decoders = tuple(decoders)

        gzip_decoder = StreamDecoder(GZipDecompressor, prime_size=GZIP_HEADER_SIZE)
        self.builtins: dict[str, DecodeHandler] = {
            "br": StreamDecoder(BrotliDecompressor),
            "gzip": gzip_decoder,
            "x-gzip": gzip_decoder,
            "zstd": StreamDecoder(
                lambda: ZstdDecompressor(zstd_options),
                prime_size=ZSTD_HEADER_SIZE,
            ),
            "": identity,
            "identity": identity,
        }

    @property
    def supported_encodings(self) -> tuple[str, ...]:
        return BUILTIN_ENCODINGS + tuple(d.encoding for d in self.decoders)

    def resolve(self, token: str) -> DecodeHandler | None:
        if token in self.builtins:
            return self.builtins[token]
        for decoder in self.decoders:
            if decoder.encoding == token:
                return decoder.handler
        return None


async def read_body(receive: Receive) -> bytes:
    """
    Reads a whole request body from ``receive``. Meant for custom decoders
    that need the complete payload at once.
    """
    chunks = []
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            raise ClientDisconnect()
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            return b"".join(chunks)


def replay_body(body: bytes, receive: Receive) -> Receive:
    """
    Returns a ``receive`` that yields ``body`` as a single message, then
    defers to ``receive`` for anything that follows (e.g. disconnects).
    """
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class RecordingReceive:
    """
    Passes ``receive`` through while keeping a copy of every message, so the
    raw body read ahead by eager decoders can be handed out again with
    ``replay``. ``stop`` ends the recording once decoding has succeeded.
    """

    def __init__(self, receive: Receive) -> None:
        self.receive = receive
        self.messages: list[Message] = []
        self.recording = True

    async def __call__(self) -> Message:
        message = await self.receive()
        if self.recording:
            self.messages.append(message)
        return message

    def stop(self) -> None:
        self.recording = False
        self.messages.clear()

    def replay(self) -> Receive:
        pending = list(self.messages)
        self.stop()

        async def replay() -> Message:
            if pending:
                return pending.pop(0)
            return await self.receive()

        return replay
