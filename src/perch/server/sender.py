"""ASGI response sending — translates perch responses to ASGI messages."""

from perch._internal.asgi import Send
from perch.http.response import RawResponse, Response


def _body_allowed(status: int) -> bool:
    """Whether an HTTP status code permits a response body."""
    # RFC: 1xx, 204, and 304 responses do not include a message body.
    return not (100 <= status < 200 or status in {204, 304})


async def send_response(
    response: Response | RawResponse, send: Send, *, head: bool = False
) -> None:
    """Translate a response into ASGI ``send()`` calls.

    With *head*, ``content-length`` still describes the full body but no
    body bytes are sent.
    """
    raw_headers: list[tuple[bytes, bytes]] = []
    if isinstance(response, Response):
        raw_headers.append((b"content-type", response.content_type.encode("latin-1")))
        body = response.body_bytes
    else:
        body = response.body
    for name, value in response.headers:
        raw_headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))

    if not _body_allowed(response.status):
        body = b""
    else:
        raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
        if head:
            body = b""

    await send({"type": "http.response.start", "status": response.status, "headers": raw_headers})
    await send({"type": "http.response.body", "body": body})
