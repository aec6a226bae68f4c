"""
Identity resolution for submitted sites.

Every resource for a site is found again by name, not through a separate
index, so these functions must stay pure: the same URL (modulo scheme,
``www.``, port and trailing slash) always yields the same key and names.
"""

import re
from enum import Enum
from typing import List, Optional
from urllib.parse import urlsplit

from siteagent.errors import InvalidUrlError

_HOST_RE = re.compile(r"^[a-z0-9.-]+$")


class KnowledgeBaseKind(str, Enum):
    CRAWL = "crawl"
    UPLOADS = "uploads"
    STRUCTURED = "structured"


def normalize_url(url: str) -> str:
    """Trim, default the scheme to https and validate. Raises InvalidUrlError."""
    candidate = (url or "").strip()
    if not candidate:
        raise InvalidUrlError("URL is required")
    if not re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", candidate):
        candidate = f"https://{candidate}"
    try:
        parts = urlsplit(candidate)
        host = parts.hostname
        _ = parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL format: {url}") from e
    if parts.scheme not in ("http", "https") or not host or not _HOST_RE.match(host):
        raise InvalidUrlError(f"Invalid URL format: {url}")
    if "." not in host and host != "localhost":
        raise InvalidUrlError(f"Invalid URL format: {url}")
    return candidate


def derive_key(url: str) -> str:
    """LogicalKey: lowercase hostname without ``www.`` and without port."""
    host = urlsplit(normalize_url(url)).hostname or ""
    if host.startswith("www."):
        host = host[len("www."):]
    return host


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", value.lower())


def derive_resource_name(url: str, kind: KnowledgeBaseKind = KnowledgeBaseKind.CRAWL) -> str:
    """Knowledge base name for a site, e.g. ``example-com-crawl``."""
    return f"{slugify(derive_key(url))}-{KnowledgeBaseKind(kind).value}"


def expected_kb_names(domain: str) -> List[str]:
    return [derive_resource_name(domain, kind) for kind in KnowledgeBaseKind]


def kb_kind_from_name(name: str) -> Optional[KnowledgeBaseKind]:
    for kind in KnowledgeBaseKind:
        if name.endswith(f"-{kind.value}"):
            return kind
    return None


def agent_name(domain: str, prefix: str) -> str:
    return f"{prefix} - {domain}"


def domain_from_agent_name(name: str, prefix: str) -> Optional[str]:
    """Reverse of agent_name(); None when the name does not follow the convention."""
    match = re.match(rf"^{re.escape(prefix)} - (.+)$", name or "")
    if not match:
        return None
    return match.group(1).strip().lower()


def site_url(domain: str) -> str:
    scheme = "http" if domain.startswith("localhost") else "https"
    return f"{scheme}://{domain}"
