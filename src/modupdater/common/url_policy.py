from __future__ import annotations

from pathlib import PurePosixPath
from urllib.parse import quote, urlparse

from modupdater.common.errors import ConfigError


def validate_update_url(url: str, allow_http: bool = True) -> None:
    parsed = urlparse(str(url))
    scheme = (parsed.scheme or "").lower()
    allowed = {"https", "http"} if allow_http else {"https"}
    if scheme not in allowed:
        raise ConfigError(f"Unsupported URL scheme for update source: {url}")
    if not parsed.hostname:
        raise ConfigError(f"Update URL has no host: {url}")


def join_url(base_url: str, relative_path: str) -> str:
    """Append a manifest-relative path to ``base_url``, percent-encoding each segment."""
    base = str(base_url).rstrip("/")
    parts = [quote(part) for part in str(relative_path).replace("\\", "/").split("/") if part]
    return base + "/" + "/".join(parts)


def validate_relative_path(name: str) -> PurePosixPath:
    # Normalize as posix to avoid platform-dependent traversal quirks.
    normalized = str(name or "").replace("\\", "/").strip()
    if not normalized:
        raise ValueError("Empty path entry.")

    path = PurePosixPath(normalized)
    parts = path.parts
    if not parts:
        raise ValueError("Path entry has no parts.")
    if path.is_absolute():
        raise ValueError(f"Path entry is absolute: {name}")
    if any(part in {"..", ""} for part in parts):
        raise ValueError(f"Path entry contains traversal segment: {name}")
    if ":" in parts[0]:
        raise ValueError(f"Path entry contains drive designator: {name}")
    return path
