"""Exclusion policy: domains that are never isolated.

Pattern: Declarative Exemption List
------------------------------------
Some sites must keep using the browser's shared cookie jar (the default entry
is ``github.com``).  The list lives in ``config/settings.yaml`` and is
consulted twice: when a credential is observed (never capture) and when a
header rule is about to be projected for a tab (never replay).

Matching is by DNS label suffix, so ``github.com`` also covers
``api.github.com`` and the cookie-style ``.github.com``, but not
``notgithub.com``.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from urllib.parse import urlsplit


def normalize_domain(domain: str) -> str:
    """Lower-case *domain* and drop the leading dot of a cookie domain."""
    return domain.strip().lower().lstrip(".")


@dataclasses.dataclass(frozen=True)
class ExclusionPolicy:
    """Immutable set of excluded domains.

    Attributes:
        domains: Normalized domain names exempt from capture and replay.
    """

    domains: frozenset[str]

    @classmethod
    def from_domains(cls, domains: Iterable[str]) -> ExclusionPolicy:
        return cls(domains=frozenset(normalize_domain(d) for d in domains if d.strip()))

    def matches_domain(self, domain: str) -> bool:
        """Return True if *domain* is, or is a subdomain of, an excluded domain."""
        host = normalize_domain(domain)
        if not host:
            return False
        return any(host == d or host.endswith("." + d) for d in self.domains)

    def matches_url(self, url: str | None) -> bool:
        """Return True if the host of *url* is excluded.

        URLs without a host (``about:blank``, ``None``) never match.
        """
        if not url:
            return False
        host = urlsplit(url).hostname
        return host is not None and self.matches_domain(host)
