"""
Certificate resolver for Cert Alarm.
"""

import asyncio
from types import MappingProxyType
from typing import Callable, Dict, List, Optional, Sequence

from cert_alarm.config import Config, is_valid_domain
from cert_alarm.errors import InvalidDomainError, ProbeError
from cert_alarm.logger import get_logger, log_probe_failed, log_resolution, log_resolution_failed
from cert_alarm.models import CertificateRecord, ProbeMethod
from cert_alarm.normalizer import error_record, normalize, utc_now
from cert_alarm.probes import (
    CdnKnownProbe,
    CertificateTransparencyProbe,
    CertSpotterSource,
    CrtShSource,
    HttpHeadProbe,
    ProbeStrategy,
    StaticOverrideProbe,
    TlsHandshakeProbe,
)
from cert_alarm.proxy import ProxyHeuristic


class CertificateResolver:
    """
    Resolve a domain to a CertificateRecord using probe strategies in a fixed order.

    Precedence, first success wins:
    - static override table (exact domain match)
    - HTTP HEAD over TLS
    - direct TLS handshakes, newest protocol version first
    - known CDN certificate, only when the proxy heuristic flagged the domain
    - Certificate Transparency lookups

    ``resolve`` never raises; every failure becomes an error record.
    """

    def __init__(
        self,
        static_probe: StaticOverrideProbe,
        proxy: ProxyHeuristic,
        direct_probes: Sequence[ProbeStrategy],
        cdn_probe: ProbeStrategy,
        ct_probe: ProbeStrategy,
        workers: int = 4,
        clock: Callable = utc_now,
    ):
        self.static_probe = static_probe
        self.proxy = proxy
        self.direct_probes = list(direct_probes)
        self.cdn_probe = cdn_probe
        self.ct_probe = ct_probe
        self.workers = workers
        self.clock = clock
        self.logger = get_logger("resolver")

    @classmethod
    def from_config(cls, config: Config) -> "CertificateResolver":
        return cls(
            static_probe=StaticOverrideProbe(MappingProxyType(dict(config.static_overrides))),
            proxy=ProxyHeuristic.from_config(config),
            direct_probes=[
                HttpHeadProbe(timeout=config.probe_timeout),
                TlsHandshakeProbe(config.tls_versions, timeout=config.probe_timeout),
            ],
            cdn_probe=CdnKnownProbe(config.cdn_certificate),
            ct_probe=CertificateTransparencyProbe(
                [CertSpotterSource(config.certspotter_url), CrtShSource(config.crtsh_url)],
                timeout=config.probe_timeout,
            ),
            workers=config.workers,
        )

    async def resolve(self, domain: str) -> CertificateRecord:
        """
        Resolve one domain.

        Args:
            domain: Bare hostname

        Returns:
            success record tagged with the winning method, or an error record
        """
        try:
            record = await self._resolve(domain)
        except InvalidDomainError as e:
            record = error_record(str(domain), str(e), self.clock())
        except Exception as e:
            self.logger.exception(f"Unexpected error resolving {domain}")
            record = error_record(str(domain), f"Certificate check failed: {e}", self.clock())

        if record.is_success:
            log_resolution(
                self.logger,
                record.domain,
                record.method.value if record.method else None,
                record.days_until_expiry,
            )
        else:
            log_resolution_failed(self.logger, record.domain, record.error_message or "")
        return record

    async def resolve_all(self, domains: Sequence[str]) -> List[CertificateRecord]:
        """Resolve domains with bounded parallelism, preserving input order."""
        semaphore = asyncio.Semaphore(self.workers)

        async def resolve_bounded(domain: str) -> CertificateRecord:
            async with semaphore:
                return await self.resolve(domain)

        return list(await asyncio.gather(*(resolve_bounded(domain) for domain in domains)))

    async def _resolve(self, domain: str) -> CertificateRecord:
        if not is_valid_domain(domain):
            raise InvalidDomainError(f"Invalid domain name: {domain!r}")

        errors: Dict[ProbeMethod, ProbeError] = {}

        if self.static_probe.covers(domain):
            record = await self._attempt(self.static_probe, domain, errors)
            if record is not None:
                return record

        proxied = await self.proxy.is_likely_proxied(domain)

        for probe in self.direct_probes:
            record = await self._attempt(probe, domain, errors)
            if record is not None:
                return record

        if proxied:
            record = await self._attempt(self.cdn_probe, domain, errors)
            if record is not None:
                return record

        record = await self._attempt(self.ct_probe, domain, errors)
        if record is not None:
            return record

        return error_record(domain, self._final_message(errors), self.clock())

    async def _attempt(
        self, probe: ProbeStrategy, domain: str, errors: Dict[ProbeMethod, ProbeError]
    ) -> Optional[CertificateRecord]:
        try:
            raw = await probe.attempt(domain)
            # A probe that answers without a usable expiry counts as failed
            return normalize(raw, self.clock())
        except ProbeError as e:
            errors[probe.method] = e
            log_probe_failed(self.logger, domain, probe.method.value, e, e.category.value)
            return None

    @staticmethod
    def _final_message(errors: Dict[ProbeMethod, ProbeError]) -> str:
        # Direct TLS failures say the most about reachability
        preference = (
            ProbeMethod.TLS,
            ProbeMethod.HTTP,
            ProbeMethod.CT_LOGS,
            ProbeMethod.CDN_KNOWN,
            ProbeMethod.STATIC_OVERRIDE,
        )
        for method in preference:
            if method in errors:
                return errors[method].message
        return "All certificate probe methods failed"
