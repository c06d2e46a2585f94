"""
Image locator parsing.

Certification photos are referenced by an opaque string written by the
mobile client. Three shapes are accepted, each resolving to a
(bucket, object path) pair:

- gs://bucket/path/to/object
- https://<host>/v0/b/{bucket}/o/{url-encoded path}?alt=media&token=...
- https://<host>/{bucket}/{path...}
"""

from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlsplit, unquote


class UnsupportedLocatorError(ValueError):
    """Raised when an image reference matches none of the known shapes."""


@dataclass(frozen=True)
class StorageLocation:
    bucket: str
    path: str

    def __str__(self) -> str:
        return f"{self.bucket}/{self.path}"


def _require(bucket: str, path: str, reference: str) -> StorageLocation:
    if not bucket or not path or path.endswith("/"):
        raise UnsupportedLocatorError(f"Locator has no bucket/object path: {reference!r}")
    return StorageLocation(bucket=bucket, path=path)


def parse_locator(reference: str, raw_schemes: Iterable[str] = ("gs",)) -> StorageLocation:
    """
    Resolve an image reference into a storage location.

    Args:
        reference: Locator string as stored on the certification record
        raw_schemes: Schemes accepted in the scheme://bucket/path form

    Returns:
        StorageLocation with bucket and decoded object path

    Raises:
        UnsupportedLocatorError: If the reference matches no accepted form
    """
    if not isinstance(reference, str) or not reference.strip():
        raise UnsupportedLocatorError("Empty image locator")

    reference = reference.strip()
    parts = urlsplit(reference)
    scheme = parts.scheme.lower()

    if scheme in {s.lower() for s in raw_schemes}:
        # netloc is the bucket, the rest is the object path
        return _require(parts.netloc, parts.path.lstrip("/"), reference)

    if scheme not in ("https", "http") or not parts.netloc:
        raise UnsupportedLocatorError(f"Unsupported image locator: {reference!r}")

    segments = parts.path.split("/")[1:]

    # REST gateway: /v0/b/{bucket}/o/{encoded path}
    if len(segments) >= 5 and segments[0] == "v0" and segments[1] == "b" and segments[3] == "o":
        encoded = "/".join(segments[4:])
        return _require(segments[2], unquote(encoded), reference)

    if len(segments) >= 2:
        return _require(segments[0], unquote("/".join(segments[1:])), reference)

    raise UnsupportedLocatorError(f"Unsupported image locator: {reference!r}")
