"""
ASGI middleware decoding request bodies sent with a Content-Encoding.

By default br (brotli), gzip and zstd (zstandard) are supported, and more
encodings can be added with custom decoders.
"""
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping

from starlette._utils import is_async_callable
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .decoders import (
    CodecRegistry,
    DecodeError,
    Decoder,
    RecordingReceive,
    read_body,
    replay_body,
)
from .headers import merge_accept_encoding, split_encoding_header

__all__ = [
    "DecodeError",
    "Decoder",
    "DecodingConfig",
    "DecodingMiddleware",
    "default_error_handler",
    "read_body",
    "replay_body",
]

logger = logging.getLogger(__name__)

# Methods that conventionally carry no body; these requests are left alone.
READ_ONLY_METHODS = frozenset({"GET", "HEAD"})

ErrorHandler = Callable[
    [Request, DecodeError],
    Response | None | Awaitable[Response | None],
]


def default_error_handler(request: Request, exc: DecodeError) -> Response:
    return PlainTextResponse(str(exc), status_code=400)


@dataclass(frozen=True)
class DecodingConfig:
    error_handler: ErrorHandler
    decoders: tuple[Decoder, ...]
    zstd_options: Mapping[int, int] | None
    excluded_handlers: tuple[re.Pattern, ...]

    @classmethod
    def build(
        cls,
        error_handler: ErrorHandler | None = None,
        decoders: Iterable[Decoder] = (),
        zstd_options: Mapping[int, int] | None = None,
        excluded_handlers: Iterable[str] | None = None,
    ) -> "DecodingConfig":
        return cls(
            error_handler=error_handler or default_error_handler,
            decoders=tuple(decoders),
            zstd_options=dict(zstd_options) if zstd_options else None,
            excluded_handlers=tuple(
                re.compile(pattern) for pattern in excluded_handlers or ()
            ),
        )


class DecodingMiddleware:
    """
    Decodes request bodies according to their Content-Encoding header and
    advertises the decodable encodings in the response Accept-Encoding.

    Encodings are undone in reverse header order, so a body sent with
    "Content-Encoding: gzip, zstd" is zstd-decoded first, then gunzipped.
    Unknown encodings are skipped. If a decoder fails, ``error_handler`` is
    called with the request and the ``DecodeError`` and the response it
    returns is sent instead of calling the application. That request still
    carries the whole original body, including bytes the failing decoder
    already read.
    """

    def __init__(
        self,
        app: ASGIApp,
        error_handler: ErrorHandler | None = None,
        decoders: Iterable[Decoder] = (),
        zstd_options: Mapping[int, int] | None = None,
        excluded_handlers: Iterable[str] | None = None,
    ) -> None:
        self.app = app
        self.config = DecodingConfig.build(
            error_handler=error_handler,
            decoders=decoders,
            zstd_options=zstd_options,
            excluded_handlers=excluded_handlers,
        )
        self.registry = CodecRegistry(
            self.config.decoders, zstd_options=self.config.zstd_options
        )
        self.supported_encodings = self.registry.supported_encodings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] in READ_ONLY_METHODS
            or self.is_excluded(scope)
        ):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        encodings = split_encoding_header(headers.get("content-encoding"))

        recorder = RecordingReceive(receive)
        decoded: Receive = recorder
        for encoding in reversed(encodings):
            decoder = self.registry.resolve(encoding)
            if decoder is None:
                logger.debug("Skipping unsupported Content-Encoding %r", encoding)
                continue
            try:
                decoded = await decoder(scope, decoded)
            except DecodeError as exc:
                logger.info(
                    "Rejecting %s %s: %s", scope["method"], scope["path"], exc
                )
                await self.handle_error(scope, recorder.replay(), send, exc)
                return
        recorder.stop()

        responder = AcceptEncodingResponder(self.app, self.supported_encodings)
        await responder(scope, decoded, send)

    def is_excluded(self, scope: Scope) -> bool:
        path = scope.get("path", "")
        for pattern in self.config.excluded_handlers:
            if pattern.search(path):
                logger.debug("Not decoding excluded path %s", path)
                return True
        return False

    async def handle_error(
        self, scope: Scope, receive: Receive, send: Send, exc: DecodeError
    ) -> None:
        request = Request(scope, receive)
        handler = self.config.error_handler
        if is_async_callable(handler):
            response = await handler(request, exc)
        else:
            response = await run_in_threadpool(handler, request, exc)
        # The handler may choose to send nothing at all.
        if response is not None:
            await response(scope, receive, send)


class AcceptEncodingResponder:
    def __init__(self, app: ASGIApp, supported_encodings: tuple[str, ...]) -> None:
        self.app = app
        self.supported_encodings = supported_encodings
        self.send: Send = unattached_send

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        self.send = send
        await self.app(scope, receive, self.send_with_accept_encoding)

    async def send_with_accept_encoding(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            message.setdefault("headers", [])
            headers = MutableHeaders(scope=message)
            current = ", ".join(headers.getlist("accept-encoding"))
            headers["Accept-Encoding"] = merge_accept_encoding(
                current, self.supported_encodings
            )
        await self.send(message)


async def unattached_send(message: Message) -> None:
    raise RuntimeError("send awaitable not set")  # pragma: no cover
