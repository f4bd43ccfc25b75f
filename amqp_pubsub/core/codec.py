"""Wire format for published payloads.

Bodies are UTF-8. Strings travel as-is (``text/plain``); every other
JSON-serialisable value is JSON-encoded (``application/json``). The decoder
accepts messages from publishers that set no content type at all: it tries
JSON and falls back to the raw string.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from amqp_pubsub.errors import PayloadDecodeError

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_TEXT = "text/plain"
CONTENT_ENCODING = "utf-8"


@dataclass(frozen=True)
class EncodedPayload:
    body: bytes
    content_type: str
    content_encoding: str = CONTENT_ENCODING


def encode_payload(payload: Any) -> EncodedPayload:
    """Encode a payload for publishing.

    Raises:
        TypeError: For ``bytes`` payloads or values JSON cannot encode.
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError("raw bytes payloads are not supported; publish a str or a JSON value")
    if isinstance(payload, str):
        return EncodedPayload(payload.encode(CONTENT_ENCODING), CONTENT_TYPE_TEXT)
    return EncodedPayload(json.dumps(payload).encode(CONTENT_ENCODING), CONTENT_TYPE_JSON)


def decode_payload(body: bytes, content_type: Optional[str] = None) -> Any:
    """Decode a delivered message body.

    Args:
        body: Raw message body.
        content_type: Content type announced by the publisher, if any.

    Returns:
        The decoded JSON value, or the text itself when it is a bare string.

    Raises:
        PayloadDecodeError: If the body is not UTF-8, or if the publisher
            announced JSON and the body does not parse.
    """
    try:
        text = bytes(body).decode(CONTENT_ENCODING)
    except UnicodeDecodeError as exc:
        raise PayloadDecodeError(f"body is not valid UTF-8: {exc}", body, content_type) from exc

    if content_type == CONTENT_TYPE_TEXT:
        return text

    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        if content_type == CONTENT_TYPE_JSON:
            raise PayloadDecodeError(f"invalid JSON body: {exc}", body, content_type) from exc
        return text
