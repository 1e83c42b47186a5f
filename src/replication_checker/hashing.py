"""DOI normalization and the hashing scheme used for anonymized lookups.

The remote index is keyed by a short prefix of a digest of the normalized
DOI, so a lookup reveals only which *group* of DOIs a record belongs to.
The algorithm and prefix length together form the lookup protocol: changing
either invalidates every prefix the remote service knows, so they are pinned
in a versioned :class:`HashScheme`.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

_RESOLVER_RE = re.compile(r"^https?://(?:dx\.)?doi\.org/", re.IGNORECASE)
_DOI_SCHEME_RE = re.compile(r"^doi:\s*", re.IGNORECASE)
_SLASHES_RE = re.compile(r"/+")


@dataclass(frozen=True)
class HashScheme:
    """Versioned hashing parameters shared with the remote index.

    Attributes:
        version: Protocol version; bump whenever algorithm or prefix_length change
        algorithm: hashlib algorithm name
        prefix_length: Number of leading hex characters sent to the remote index.
            Shorter prefixes mean larger anonymity sets and larger responses.
    """

    version: int = 1
    algorithm: str = "md5"
    prefix_length: int = 3

    def __post_init__(self) -> None:
        if self.algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unknown hash algorithm: {self.algorithm}")
        if self.prefix_length < 1:
            raise ValueError("prefix_length must be at least 1")


DEFAULT_SCHEME = HashScheme()


def normalize(doi: str) -> str:
    """Canonicalize a DOI: trim, lowercase, drop resolver URL and ``doi:`` prefix.

    Idempotent and total: any string normalizes to some deterministic value.
    Whether the result looks like a DOI is checked separately with
    :func:`is_plausible_doi`.
    """
    d = (doi or "").strip().lower()
    while True:
        stripped = _DOI_SCHEME_RE.sub("", _RESOLVER_RE.sub("", d).strip()).strip()
        if stripped == d:
            break
        d = stripped
    return _SLASHES_RE.sub("/", d).strip()


def is_plausible_doi(doi: str | None) -> bool:
    """Cheap sanity check on a DOI (normalized or not)."""
    if not doi:
        return False
    d = normalize(doi)
    return d.startswith("10.") and "/" in d


class Hasher:
    """Computes digests and lookup prefixes under a fixed :class:`HashScheme`."""

    def __init__(self, scheme: HashScheme = DEFAULT_SCHEME) -> None:
        self.scheme = scheme

    def normalize(self, doi: str) -> str:
        return normalize(doi)

    def digest(self, doi: str) -> str:
        """Full lowercase hex digest of the normalized DOI."""
        h = hashlib.new(self.scheme.algorithm, normalize(doi).encode("utf-8"))
        return h.hexdigest()

    def prefix(self, doi: str) -> str:
        return self.digest(doi)[: self.scheme.prefix_length]

    def prefix_of_digest(self, digest: str) -> str:
        return digest[: self.scheme.prefix_length]


_default_hasher = Hasher()


def digest(doi: str) -> str:
    """Digest of ``doi`` under the default scheme."""
    return _default_hasher.digest(doi)


def prefix(doi: str) -> str:
    """Lookup prefix of ``doi`` under the default scheme."""
    return _default_hasher.prefix(doi)
