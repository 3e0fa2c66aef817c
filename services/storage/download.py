"""Fetch object bytes from a signed URL (http/https) or a local file:// URL."""

from pathlib import Path
from urllib.parse import unquote, urlparse
from loguru import logger

import httpx

from config.errors import UpstreamError


def download_url(url: str, timeout: float = 600.0, http_client: httpx.Client | None = None) -> bytes:
    parsed = urlparse(url)

    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
        try:
            data = path.read_bytes()
        except OSError as e:
            raise UpstreamError(f"Failed to download audio file: {e}") from e
        logger.debug(f"Read {len(data)} bytes from {path}")
        return data

    if parsed.scheme not in ("http", "https"):
        raise UpstreamError(f"Failed to download audio file: unsupported URL scheme {parsed.scheme!r}")

    client = http_client or httpx.Client()
    try:
        resp = client.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to download audio file: {e}") from e
    finally:
        if http_client is None:
            client.close()

    if resp.status_code >= 400:
        raise UpstreamError("Failed to download audio file", status=resp.status_code)
    logger.debug(f"Downloaded {len(resp.content)} bytes")
    return resp.content
