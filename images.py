"""Product image URL helpers: share-link conversion, validation and reachability checks."""

from __future__ import annotations

import re
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, build_opener

USER_AGENT = "Mozilla/5.0 (compatible; LocalBuyImageChecker/1.0)"
KNOWN_IMAGE_HOSTS = (
    "images.pexels.com",
    "pixabay.com",
    "unsplash.com",
    "drive.google.com",
    "imgur.com",
    "i.imgur.com",
)
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")

_DRIVE_FILE_PATTERN = re.compile(r"drive\.google\.com/file/d/([a-zA-Z0-9_-]+)")
_DRIVE_OPEN_PATTERN = re.compile(r"drive\.google\.com/open\?id=([a-zA-Z0-9_-]+)")


def convert_google_drive_link(url: str) -> str:
    """Turn a Google Drive share link into a direct download link; other URLs pass through."""

    if not url:
        return url
    match = _DRIVE_FILE_PATTERN.search(url) or _DRIVE_OPEN_PATTERN.search(url)
    if not match:
        return url
    return f"https://drive.google.com/uc?export=download&id={match.group(1)}"


def validate_image_url(url: str) -> tuple[bool, Optional[str]]:
    try:
        parsed = urlsplit((url or "").strip())
    except ValueError:
        return False, "Invalid URL format"
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        if parsed.scheme and parsed.scheme not in ("http", "https"):
            return False, "URL must use HTTP or HTTPS protocol"
        return False, "Invalid URL format"

    hostname = (parsed.hostname or "").lower()
    path = parsed.path.lower()
    known_host = any(hostname == host or hostname.endswith(f".{host}") for host in KNOWN_IMAGE_HOSTS)
    has_extension = any(extension in path for extension in IMAGE_EXTENSIONS)
    if not known_host and not has_extension:
        return (
            False,
            "URL should be from a known image host (Pexels, Pixabay, Unsplash, Google Drive, Imgur) "
            "or have a valid image extension",
        )
    return True, None


def check_image_url(url: str, *, timeout: float = 5, opener=None) -> dict[str, object]:
    """Issue a HEAD request and report whether the URL serves an image."""

    target = convert_google_drive_link(url)
    request = Request(target, method="HEAD", headers={"User-Agent": USER_AGENT})
    client = opener or build_opener()
    try:
        with client.open(request, timeout=timeout) as response:
            status = int(getattr(response, "status", None) or response.getcode())
            content_type = (response.headers.get("Content-Type") or "").lower()
    except HTTPError as exc:
        return {"url": url, "valid": False, "statusCode": exc.code, "error": f"HTTP {exc.code}"}
    except (URLError, TimeoutError, ValueError) as exc:
        return {"url": url, "valid": False, "statusCode": None, "error": f"Network error: {exc}"}

    return {
        "url": url,
        "valid": status == 200 and content_type.startswith("image/"),
        "statusCode": status,
        "contentType": content_type,
    }
