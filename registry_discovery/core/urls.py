from __future__ import annotations

import re
from urllib.parse import urlparse, urlunparse

SUPPORTED_SCHEMES = {"http", "https"}
HOST_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
PATH_SEGMENT_RE = re.compile(r"^[a-z0-9_.-]+$")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9-]+")
_SLUG_DASHES_RE = re.compile(r"-{2,}")


def normalize_repository_url(raw_url: str) -> str:
    """Canonical form used as the queue's uniqueness key.

    Scheme defaults to https, host and path are lower-cased, ``www.``, a ``.git``
    suffix, trailing slashes, query and fragment are dropped. Raises ValueError
    for anything that does not look like ``host/owner/repo``.
    """
    if not isinstance(raw_url, str) or not raw_url.strip():
        raise ValueError("repository url must be a non-empty string")

    candidate = raw_url.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    scheme = parsed.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"unsupported url scheme: {parsed.scheme or '<empty>'}")
    if parsed.username or parsed.password:
        raise ValueError("repository url must not embed credentials")

    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not HOST_RE.match(host):
        raise ValueError(f"invalid repository host: {parsed.netloc or '<empty>'}")

    netloc = host
    try:
        port = parsed.port
    except ValueError as exc:
        raise ValueError("invalid repository url port") from exc
    if port is not None and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        netloc = f"{host}:{port}"

    segments = [segment for segment in parsed.path.lower().split("/") if segment]
    if segments and segments[-1].endswith(".git"):
        segments[-1] = segments[-1][: -len(".git")]
    segments = [segment for segment in segments if segment]
    if len(segments) < 2:
        raise ValueError("repository url must include owner and repository name")
    for segment in segments:
        if not PATH_SEGMENT_RE.match(segment) or segment in {".", ".."}:
            raise ValueError(f"invalid repository path segment: {segment}")

    return urlunparse((scheme, netloc, "/" + "/".join(segments), "", "", ""))


def repository_full_name(normalized_url: str) -> str:
    return urlparse(normalized_url).path.strip("/")


def repository_owner(normalized_url: str) -> str:
    return repository_full_name(normalized_url).split("/")[0]


def repository_name(normalized_url: str) -> str:
    return repository_full_name(normalized_url).split("/")[-1]


def slugify(name: str) -> str:
    slug = _SLUG_INVALID_RE.sub("-", name.strip().lower())
    slug = _SLUG_DASHES_RE.sub("-", slug).strip("-")
    return slug or "server"
