"""Main tests for the request decoding middleware.

The Content-Encoding scenarios follow the ones of the zstd response
middleware tests, but run the other way around: the client compresses and the
application must see plain bytes.
"""

import functools
import gzip

import brotli
import pytest

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route
from starlette.testclient import TestClient

try:
    from compression import zstd
except ImportError:
    from backports import zstd

from decoding_asgi import (
    DecodeError,
    Decoder,
    DecodingMiddleware,
    read_body,
    replay_body,
)
from decoding_asgi.headers import merge_accept_encoding, split_encoding_header


@pytest.fixture
def test_client_factory(anyio_backend_name, anyio_backend_options):
    return functools.partial(
        TestClient,
        backend=anyio_backend_name,
        backend_options=anyio_backend_options,
    )


async def echo(request):
    body = await request.body()
    return Response(body, media_type="application/octet-stream")


def echo_app(calls=None, **options):
    async def homepage(request):
        if calls is not None:
            calls.append(request)
        return await echo(request)

    app = Starlette(
        routes=[Route("/", homepage, methods=["GET", "HEAD", "POST", "PUT"])]
    )
    app.add_middleware(DecodingMiddleware, **options)
    return app


async def append_custom(scope, receive):
    body = await read_body(receive)
    return replay_body(body + b"-custom", receive)


def test_no_content_encoding(test_client_factory):
    client = test_client_factory(echo_app())
    response = client.post("/", content=b"plain body")
    assert response.status_code == 200
    assert response.content == b"plain body"
    assert response.headers["Accept-Encoding"] == "br, gzip, zstd"


@pytest.mark.parametrize(
    "encoding, compress",
    [
        ("br", brotli.compress),
        ("gzip", gzip.compress),
        ("x-gzip", gzip.compress),
        ("zstd", zstd.compress),
    ],
)
def test_decodes_body(test_client_factory, encoding, compress):
    payload = b"x" * 4000
    client = test_client_factory(echo_app())
    response = client.put(
        "/", content=compress(payload), headers={"content-encoding": encoding}
    )
    assert response.status_code == 200
    assert response.content == payload
    assert response.headers["Accept-Encoding"] == "br, gzip, zstd"


def test_stacked_encodings_decoded_in_reverse(test_client_factory):
    # gzip was applied first and zstd last, so zstd must be undone first.
    body = zstd.compress(gzip.compress(b"test"))

    client = test_client_factory(echo_app())
    response = client.post(
        "/", content=body, headers={"content-encoding": "gzip, zstd"}
    )
    assert response.status_code == 200
    assert response.content == b"test"


def test_same_encoding_applied_twice(test_client_factory):
    body = gzip.compress(gzip.compress(b"test"))

    client = test_client_factory(echo_app())
    response = client.post(
        "/", content=body, headers={"content-encoding": "gzip,gzip"}
    )
    assert response.status_code == 200
    assert response.content == b"test"


def test_concatenated_members_and_frames(test_client_factory):
    client = test_client_factory(echo_app())

    response = client.post(
        "/",
        content=gzip.compress(b"hello ") + gzip.compress(b"world"),
        headers={"content-encoding": "gzip"},
    )
    assert response.content == b"hello world"

    response = client.post(
        "/",
        content=zstd.compress(b"hello ") + zstd.compress(b"world"),
        headers={"content-encoding": "zstd"},
    )
    assert response.content == b"hello world"


@pytest.mark.parametrize("encoding", ["identity", "", "deflate", "custom"])
def test_passthrough_encodings(test_client_factory, encoding):
    # identity and empty tokens are no-ops, unknown ones are skipped.
    client = test_client_factory(echo_app())
    response = client.post(
        "/", content=b"test", headers={"content-encoding": encoding}
    )
    assert response.status_code == 200
    assert response.content == b"test"


def test_custom_decoder(test_client_factory):
    app = echo_app(decoders=[Decoder("custom", append_custom)])

    client = test_client_factory(app)
    response = client.post("/", content=b"test", headers={"content-encoding": "custom"})
    assert response.status_code == 200
    assert response.content == b"test-custom"
    assert response.headers["Accept-Encoding"] == "br, gzip, zstd, custom"


def test_custom_decoder_combined_with_builtin(test_client_factory):
    app = echo_app(decoders=[Decoder("custom", append_custom)])

    client = test_client_factory(app)
    response = client.post(
        "/",
        content=gzip.compress(b"test"),
        headers={"content-encoding": "custom, gzip"},
    )
    assert response.status_code == 200
    assert response.content == b"test-custom"


def test_first_registered_custom_decoder_wins(test_client_factory):
    async def append_other(scope, receive):
        body = await read_body(receive)
        return replay_body(body + b"-other", receive)

    app = echo_app(
        decoders=[Decoder("custom", append_custom), Decoder("custom", append_other)]
    )

    client = test_client_factory(app)
    response = client.post("/", content=b"test", headers={"content-encoding": "custom"})
    assert response.content == b"test-custom"


def test_builtin_shadows_custom_decoder(test_client_factory):
    app = echo_app(decoders=[Decoder("gzip", append_custom)])

    client = test_client_factory(app)
    response = client.post(
        "/", content=gzip.compress(b"test"), headers={"content-encoding": "gzip"}
    )
    assert response.status_code == 200
    assert response.content == b"test"
    assert response.headers["Accept-Encoding"] == "br, gzip, zstd, gzip"


def test_custom_decoder_error(test_client_factory):
    async def reject(scope, receive):
        raise DecodeError("custom: unsupported payload")

    app = echo_app(decoders=[Decoder("custom", reject)])

    client = test_client_factory(app)
    response = client.post("/", content=b"test", headers={"content-encoding": "custom"})
    assert response.status_code == 400
    assert response.text == "custom: unsupported payload"


def test_invalid_body_default_error_handler(test_client_factory):
    calls = []

    client = test_client_factory(echo_app(calls))
    response = client.post("/", content=b"test", headers={"content-encoding": "gzip"})
    assert response.status_code == 400
    assert response.text.startswith("gzip: ")
    assert "Accept-Encoding" not in response.headers
    assert calls == []


@pytest.mark.parametrize(
    "encoding, body",
    [
        ("gzip", b""),
        ("gzip", gzip.compress(b"x" * 4000)[:-4]),
        ("zstd", b"not zstd"),
    ],
)
def test_invalid_body_rejected_before_app(test_client_factory, encoding, body):
    calls = []

    client = test_client_factory(echo_app(calls))
    response = client.post("/", content=body, headers={"content-encoding": encoding})
    assert response.status_code == 400
    assert response.text.startswith(f"{encoding}: ")
    assert calls == []


def test_stops_at_first_failing_layer(test_client_factory):
    custom_calls = []

    async def record(scope, receive):
        custom_calls.append(scope)
        return receive

    calls = []
    app = echo_app(calls, decoders=[Decoder("custom", record)])

    client = test_client_factory(app)
    response = client.post(
        "/", content=b"test", headers={"content-encoding": "custom, gzip"}
    )
    assert response.status_code == 400
    assert custom_calls == []
    assert calls == []


def test_brotli_errors_surface_when_body_is_read(test_client_factory):
    client = test_client_factory(echo_app())
    with pytest.raises(DecodeError, match="^br: "):
        client.post("/", content=b"not brotli", headers={"content-encoding": "br"})


def test_brotli_body_not_read(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK")

    app = Starlette(routes=[Route("/", homepage, methods=["POST"])])
    app.add_middleware(DecodingMiddleware)

    client = test_client_factory(app)
    response = client.post("/", content=b"not brotli", headers={"content-encoding": "br"})
    assert response.status_code == 200
    assert response.text == "OK"


def test_empty_zstd_body(test_client_factory):
    client = test_client_factory(echo_app())
    response = client.post("/", content=b"", headers={"content-encoding": "zstd"})
    assert response.status_code == 200
    assert response.content == b""


def test_custom_error_handler(test_client_factory):
    calls = []
    errors = []

    async def error_handler(request, exc):
        errors.append(exc)
        return Response(status_code=999)

    client = test_client_factory(echo_app(calls, error_handler=error_handler))
    response = client.post("/", content=b"test", headers={"content-encoding": "gzip"})
    assert response.status_code == 999
    assert len(errors) == 1
    assert isinstance(errors[0], DecodeError)
    assert calls == []


def test_sync_error_handler(test_client_factory):
    def error_handler(request, exc):
        assert isinstance(request, Request)
        return PlainTextResponse(f"{request.method} rejected", status_code=415)

    client = test_client_factory(echo_app(error_handler=error_handler))
    response = client.post("/", content=b"test", headers={"content-encoding": "zstd"})
    assert response.status_code == 415
    assert response.text == "POST rejected"


def test_class_based_async_error_handler(test_client_factory):
    class ErrorHandler:
        def __init__(self):
            self.errors = []

        async def __call__(self, request, exc):
            self.errors.append(exc)
            return PlainTextResponse("unprocessable", status_code=422)

    handler = ErrorHandler()
    client = test_client_factory(echo_app(error_handler=handler))
    response = client.post("/", content=b"test", headers={"content-encoding": "gzip"})
    assert response.status_code == 422
    assert response.text == "unprocessable"
    assert len(handler.errors) == 1


def test_error_handler_reads_original_body(test_client_factory):
    async def error_handler(request, exc):
        body = await request.body()
        return Response(body, status_code=400)

    client = test_client_factory(echo_app(error_handler=error_handler))
    response = client.post("/", content=b"not gzip", headers={"content-encoding": "gzip"})
    assert response.status_code == 400
    assert response.content == b"not gzip"


def test_error_handler_none_uses_default(test_client_factory):
    client = test_client_factory(echo_app(error_handler=None))
    response = client.post("/", content=b"test", headers={"content-encoding": "gzip"})
    assert response.status_code == 400


@pytest.mark.anyio
async def test_error_handler_may_send_nothing():
    calls = []

    async def app(scope, receive, send):
        calls.append(scope)  # pragma: no cover

    async def error_handler(request, exc):
        return None

    middleware = DecodingMiddleware(app, error_handler=error_handler)
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(b"content-encoding", b"gzip")],
    }
    messages = [{"type": "http.request", "body": b"test", "more_body": False}]
    sent = []

    async def receive():
        return messages.pop(0)

    async def send(message):
        sent.append(message)

    await middleware(scope, receive, send)
    assert sent == []
    assert calls == []


def test_merges_existing_accept_encoding(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK", headers={"accept-encoding": "gzip"})

    app = Starlette(routes=[Route("/", homepage, methods=["POST"])])
    app.add_middleware(DecodingMiddleware)

    client = test_client_factory(app)
    response = client.post(
        "/", content=gzip.compress(b"test"), headers={"content-encoding": "gzip"}
    )
    assert response.status_code == 200
    assert response.headers["Accept-Encoding"] == "br, gzip, zstd"


def test_merges_existing_accept_encoding_with_custom(test_client_factory):
    def homepage(request):
        return PlainTextResponse("OK", headers={"accept-encoding": "zstd, deflate"})

    app = Starlette(routes=[Route("/", homepage, methods=["POST"])])
    app.add_middleware(
        DecodingMiddleware, decoders=[Decoder("custom", append_custom)]
    )

    client = test_client_factory(app)
    response = client.post("/", content=b"test")
    assert response.headers["Accept-Encoding"] == "br, custom, deflate, gzip, zstd"


@pytest.mark.parametrize("method", ["GET", "HEAD"])
def test_read_only_methods_untouched(test_client_factory, method):
    def homepage(request):
        return PlainTextResponse("OK")

    app = Starlette(routes=[Route("/", homepage)])
    app.add_middleware(DecodingMiddleware)

    client = test_client_factory(app)
    response = client.request(method, "/", headers={"content-encoding": "gzip"})
    assert response.status_code == 200
    assert "Accept-Encoding" not in response.headers


def test_get_body_not_decoded(test_client_factory):
    client = test_client_factory(echo_app())
    response = client.request(
        "GET", "/", content=b"not gzip", headers={"content-encoding": "gzip"}
    )
    assert response.status_code == 200
    assert response.content == b"not gzip"
    assert "Accept-Encoding" not in response.headers


def test_excluded_handlers(test_client_factory):
    app = Starlette(routes=[Route("/excluded", echo, methods=["POST"])])
    app.add_middleware(DecodingMiddleware, excluded_handlers=["/excluded"])

    client = test_client_factory(app)
    response = client.post(
        "/excluded", content=b"not gzip", headers={"content-encoding": "gzip"}
    )
    assert response.status_code == 200
    assert response.content == b"not gzip"
    assert "Accept-Encoding" not in response.headers


def test_zstd_options(test_client_factory):
    # The frame needs a window far larger than 1 KiB.
    body = zstd.compress(b"x" * 100_000)

    app = echo_app(zstd_options={zstd.DecompressionParameter.window_log_max: 10})
    client = test_client_factory(app)
    response = client.post("/", content=body, headers={"content-encoding": "zstd"})
    assert response.status_code == 400
    assert response.text.startswith("zstd: ")

    app = echo_app(zstd_options={zstd.DecompressionParameter.window_log_max: 20})
    client = test_client_factory(app)
    response = client.post("/", content=body, headers={"content-encoding": "zstd"})
    assert response.status_code == 200
    assert response.content == b"x" * 100_000


def chunked_messages(body, size):
    chunks = [body[i : i + size] for i in range(0, len(body), size)]
    messages = [
        {"type": "http.request", "body": chunk, "more_body": True} for chunk in chunks
    ]
    messages[-1]["more_body"] = False
    messages.append({"type": "http.disconnect"})
    return messages


@pytest.mark.anyio
async def test_streamed_body_and_disconnect():
    payload = b"hello world" * 100
    messages = chunked_messages(zstd.compress(gzip.compress(payload)), 7)
    received = {}

    async def app(scope, receive, send):
        received["body"] = await read_body(receive)
        received["next"] = await receive()
        await PlainTextResponse("OK")(scope, receive, send)

    async def receive():
        return messages.pop(0)

    sent = []

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(b"content-encoding", b"gzip, zstd")],
    }
    await DecodingMiddleware(app)(scope, receive, send)

    assert received["body"] == payload
    assert received["next"] == {"type": "http.disconnect"}
    assert (b"accept-encoding", b"br, gzip, zstd") in sent[0]["headers"]


@pytest.mark.anyio
async def test_truncated_stream_fails_on_read():
    messages = chunked_messages(gzip.compress(b"hello world" * 100)[:-4], 7)

    async def app(scope, receive, send):
        await read_body(receive)

    async def receive():
        return messages.pop(0)

    async def send(message):
        pass  # pragma: no cover

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(b"content-encoding", b"gzip")],
    }
    with pytest.raises(DecodeError, match="unexpected end of stream"):
        await DecodingMiddleware(app)(scope, receive, send)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", []),
        (None, []),
        ("   ", []),
        ("gzip", ["gzip"]),
        (" gzip ,  zstd", ["gzip", "zstd"]),
        ("gzip,,br", ["gzip", "", "br"]),
        ("gzip, gzip", ["gzip", "gzip"]),
        ("GZip", ["GZip"]),
    ],
)
def test_split_encoding_header(raw, expected):
    assert split_encoding_header(raw) == expected


@pytest.mark.parametrize(
    "current, supported, expected",
    [
        # 1. Nothing set: supported list as is, in registration order
        ("", ("br", "gzip", "zstd", "custom"), "br, gzip, zstd, custom"),

        # 2. Existing value is merged, deduplicated and sorted
        ("gzip", ("br", "gzip", "zstd"), "br, gzip, zstd"),
        ("zstd, deflate", ("br", "gzip", "zstd"), "br, deflate, gzip, zstd"),

        # 3. Sorting also applies to customs once a merge happens
        ("gzip", ("br", "gzip", "zstd", "custom"), "br, custom, gzip, zstd"),
    ],
)
def test_merge_accept_encoding(current, supported, expected):
    assert merge_accept_encoding(current, supported) == expected


@pytest.mark.anyio
async def test_error_handler_reads_streamed_original_body():
    # gzip fails on the first chunk, before the rest of the body is read.
    body = b"definitely not a gzip stream"
    messages = chunked_messages(body, 7)
    received = {}

    async def app(scope, receive, send):
        pass  # pragma: no cover

    async def error_handler(request, exc):
        received["body"] = await request.body()
        return None

    async def receive():
        return messages.pop(0)

    async def send(message):
        pass  # pragma: no cover

    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(b"content-encoding", b"gzip")],
    }
    await DecodingMiddleware(app, error_handler=error_handler)(scope, receive, send)
    assert received["body"] == body
