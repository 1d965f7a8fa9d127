"""
Image acquisition: download by URL or decode a base64 payload.

Both paths enforce the same payload ceiling; downloads also enforce a timeout.
Failures surface as `ImageFetchError` (or its timeout / size subclasses) and
`ImageDecodeError`, never as transport-library exceptions.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import socket
import threading
import time

import requests

from .errors import (
    ImageDecodeError,
    ImageFetchError,
    ImageFetchTimeoutError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
_CHUNK_SIZE = 64 * 1024
_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


class _Watchdog:
    """Shuts the response socket down once the overall deadline passes.

    A blocked read wakes up with end-of-stream, which lets `fetch_image`
    give up even while the server keeps trickling bytes.
    """

    def __init__(self, resp: requests.Response, seconds: float) -> None:
        self.fired = False
        self._resp = resp
        self._timer = threading.Timer(max(seconds, 0.0), self._fire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def _fire(self) -> None:
        self.fired = True
        connection = getattr(getattr(self._resp, "raw", None), "connection", None)
        sock = getattr(connection, "sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug("Socket already closed when fetch deadline passed: %s", exc)


def fetch_image(
    url: str,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> bytes:
    """
    Download `url` into memory, refusing bodies larger than `max_bytes`.

    `timeout_seconds` bounds the whole download, not just each socket read,
    so a server dripping bytes slowly cannot hold the request open.
    """
    deadline = time.monotonic() + timeout_seconds
    try:
        with requests.get(url, stream=True, timeout=timeout_seconds) as resp:
            resp.raise_for_status()

            declared = resp.headers.get("Content-Length")
            if declared is not None and declared.isdigit() and int(declared) > max_bytes:
                raise PayloadTooLargeError(
                    f"Image is {declared} bytes, limit is {max_bytes} bytes"
                )

            watchdog = _Watchdog(resp, deadline - time.monotonic())
            watchdog.start()
            try:
                buf = bytearray()
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if watchdog.fired or time.monotonic() > deadline:
                        break
                    buf.extend(chunk)
                    if len(buf) > max_bytes:
                        raise PayloadTooLargeError(f"Image exceeds limit of {max_bytes} bytes")
            except requests.RequestException:
                if not watchdog.fired:
                    raise
            finally:
                watchdog.cancel()

            if watchdog.fired or time.monotonic() > deadline:
                raise ImageFetchTimeoutError(f"Timed out after {timeout_seconds}s fetching {url}")
            return bytes(buf)
    except requests.Timeout as exc:
        raise ImageFetchTimeoutError(f"Timed out after {timeout_seconds}s fetching {url}") from exc
    except requests.HTTPError as exc:
        raise ImageFetchError(f"Image URL returned HTTP {exc.response.status_code}") from exc
    except requests.RequestException as exc:
        raise ImageFetchError(f"Could not download image: {exc}") from exc


def decode_base64_image(data: str, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Strip an optional `data:image/...;base64,` prefix and decode the payload."""
    payload = _DATA_URL_PREFIX.sub("", data.strip(), count=1)
    try:
        image_bytes = base64.b64decode(payload)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"Invalid base64 image data: {exc}") from exc
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    if len(image_bytes) > max_bytes:
        raise PayloadTooLargeError(f"Image exceeds limit of {max_bytes} bytes")
    return image_bytes
