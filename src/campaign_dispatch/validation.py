# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Address normalization, syntax checks and cached MX validation.

The MX check answers one question per domain: can this domain receive
mail at all? Results are cached in ``email_validation_cache`` for
``ttl`` seconds. A lookup that cannot reach a verdict (timeouts, broken
nameservers) returns ``None`` and is not cached, so delivery goes ahead
rather than blocking on DNS trouble. Any other resolver error, such as a
name with an oversized label, is a negative verdict.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import dns.asyncresolver
import dns.exception
import dns.resolver

from .logger import get_logger

if TYPE_CHECKING:
    from .dispatch_db import DispatchDb

logger = get_logger("MxValidator")

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 254
MAX_LOCAL_LENGTH = 64


def normalize_email(addr: str | None) -> str:
    if not addr:
        return ""
    return addr.strip().lower()


def is_valid_email_syntax(addr: str | None) -> bool:
    """Practical syntax check: ``local@domain.tld`` with sane lengths."""
    if not addr or "@" not in addr:
        return False
    if len(addr) < 5 or len(addr) > MAX_EMAIL_LENGTH:
        return False
    if EMAIL_REGEX.match(addr) is None:
        return False
    local, domain = addr.rsplit("@", 1)
    if len(local) > MAX_LOCAL_LENGTH or ".." in addr:
        return False
    if domain.startswith(("-", ".")) or domain.endswith(("-", ".")):
        return False
    return len(domain.rsplit(".", 1)[-1]) >= 2


def extract_domain(addr: str) -> str:
    return normalize_email(addr).rsplit("@", 1)[-1]


def parse_manual_emails(text: str) -> tuple[list[str], list[str]]:
    """Split a pasted block of addresses into ``(valid, invalid)``.

    Separators are commas, semicolons and whitespace. Valid addresses are
    normalized and deduplicated in input order.
    """
    valid: list[str] = []
    invalid: list[str] = []
    seen: set[str] = set()
    for token in re.split(r"[,;\s]+", text or ""):
        if not token:
            continue
        email = normalize_email(token)
        if not is_valid_email_syntax(email):
            invalid.append(token)
        elif email not in seen:
            seen.add(email)
            valid.append(email)
    return valid, invalid


@dataclass
class MxResult:
    """Outcome of a domain check. ``valid`` is None when DNS gave no verdict."""

    domain: str
    valid: bool | None
    records: list[str] = field(default_factory=list)
    cached: bool = False
    checked_at: int | None = None


class MxValidator:
    """Domain MX validation backed by the shared validation cache.

    Args:
        db: Database providing ``validation_cache``.
        ttl: Seconds a cached verdict stays valid.
        resolver: Object with an async ``resolve(name, rdtype)``; defaults to
            a ``dns.asyncresolver.Resolver`` with ``lifetime`` seconds budget.
        clock: Epoch-seconds clock.
    """

    def __init__(
        self,
        db: DispatchDb,
        ttl: int = 24 * 3600,
        resolver: Any = None,
        lifetime: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.ttl = ttl
        self.clock = clock
        if resolver is None:
            resolver = dns.asyncresolver.Resolver()
            resolver.lifetime = lifetime
        self.resolver = resolver

    async def check(self, domain: str) -> MxResult:
        domain = domain.strip().lower().rstrip(".")
        now = int(self.clock())
        cached = await self.db.validation_cache.get(domain)
        if cached and now - int(cached["checked_at"]) < self.ttl:
            return MxResult(
                domain=domain,
                valid=bool(cached["mx_valid"]),
                records=list(cached.get("mx_records") or []),
                cached=True,
                checked_at=int(cached["checked_at"]),
            )

        valid, records = await self._lookup(domain)
        if valid is None:
            return MxResult(domain=domain, valid=None)
        await self.db.validation_cache.put(domain, valid, records, now)
        return MxResult(domain=domain, valid=valid, records=records, checked_at=now)

    async def _lookup(self, domain: str) -> tuple[bool | None, list[str]]:
        try:
            answers = await self.resolver.resolve(domain, "MX")
            mx = sorted(
                ((r.preference, r.exchange.to_text()) for r in answers), key=lambda x: x[0]
            )
            hosts = [h for _, h in mx if h not in (".", "")]
            # RFC 7505 null MX: the domain explicitly accepts no mail
            return bool(hosts), hosts
        except dns.resolver.NXDOMAIN:
            return False, []
        except dns.resolver.NoAnswer:
            pass
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as exc:
            logger.warning("MX lookup for %s inconclusive: %s", domain, exc)
            return None, []
        except dns.exception.DNSException as exc:
            # Names dnspython refuses to build (oversized labels and the like)
            logger.info("MX lookup for %s rejected the name: %s", domain, exc)
            return False, []

        # No MX record: an A record still makes the domain deliverable
        try:
            answers = await self.resolver.resolve(domain, "A")
            return True, [answers[0].to_text()]
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return False, []
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as exc:
            logger.warning("A lookup for %s inconclusive: %s", domain, exc)
            return None, []
        except dns.exception.DNSException as exc:
            logger.info("A lookup for %s rejected the name: %s", domain, exc)
            return False, []


__all__ = [
    "EMAIL_REGEX",
    "MxResult",
    "MxValidator",
    "extract_domain",
    "is_valid_email_syntax",
    "normalize_email",
    "parse_manual_emails",
]
