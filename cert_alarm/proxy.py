"""
Heuristic detection of CDN-fronted domains.
"""

import asyncio
from typing import List, Optional, Sequence

import dns.asyncresolver
import dns.exception
import dns.resolver

from cert_alarm.config import Config
from cert_alarm.logger import get_logger


class ProxyHeuristic:
    """
    Classify a domain as "likely behind a known CDN".

    Resolved addresses are matched against known CDN address prefixes. When
    resolution fails or times out, the hostname is matched against a short
    list of known CDN-fronted domains instead. False negatives are acceptable.
    """

    RECORD_TYPES = ("A", "AAAA")

    def __init__(
        self,
        ipv4_prefixes: Sequence[str],
        ipv6_prefixes: Sequence[str],
        domain_suffixes: Sequence[str],
        dns_timeout: float = 5.0,
    ):
        self.ipv4_prefixes = tuple(ipv4_prefixes)
        self.ipv6_prefixes = tuple(prefix.lower() for prefix in ipv6_prefixes)
        self.domain_suffixes = tuple(suffix.lower() for suffix in domain_suffixes)
        self.dns_timeout = dns_timeout
        self.logger = get_logger("proxy")
        self._resolver: Optional[dns.asyncresolver.Resolver] = None

    @classmethod
    def from_config(cls, config: Config) -> "ProxyHeuristic":
        return cls(
            ipv4_prefixes=config.cdn_ipv4_prefixes,
            ipv6_prefixes=config.cdn_ipv6_prefixes,
            domain_suffixes=config.cdn_domain_suffixes,
            dns_timeout=config.dns_timeout,
        )

    async def is_likely_proxied(self, domain: str) -> bool:
        """Resolve the domain and check for CDN address prefixes."""
        try:
            addresses = await asyncio.wait_for(self._resolve(domain), timeout=self.dns_timeout)
        except (dns.exception.DNSException, OSError, asyncio.TimeoutError) as e:
            self.logger.debug(f"DNS lookup failed for {domain}, using hostname match: {e}")
            return self.matches_domain(domain)

        proxied = self.matches_addresses(addresses)
        self.logger.debug(f"Domain {domain} resolved to {addresses}, proxied: {proxied}")
        return proxied

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        if self._resolver is None:
            resolver = dns.asyncresolver.Resolver(configure=True)
            resolver.timeout = self.dns_timeout
            resolver.lifetime = self.dns_timeout
            self._resolver = resolver
        return self._resolver

    async def _resolve(self, domain: str) -> List[str]:
        resolver = self._get_resolver()
        addresses: List[str] = []
        for record_type in self.RECORD_TYPES:
            try:
                answer = await resolver.resolve(domain, record_type, lifetime=self.dns_timeout)
            except dns.resolver.NoAnswer:
                # No AAAA records is a normal outcome
                continue
            for rdata in answer:
                if rdata.address not in addresses:
                    addresses.append(rdata.address)
        return addresses

    def matches_addresses(self, addresses: Sequence[str]) -> bool:
        for address in addresses:
            if ":" in address:
                if address.lower().startswith(self.ipv6_prefixes):
                    return True
            elif address.startswith(self.ipv4_prefixes):
                return True
        return False

    def matches_domain(self, domain: str) -> bool:
        domain = domain.lower()
        return any(suffix in domain for suffix in self.domain_suffixes)
