"""
Probe strategies for obtaining a domain's certificate validity window.

Each strategy implements ``attempt(domain)`` and either returns a raw
ProbeResult or raises ProbeError. Ordering and fallback live in the resolver.
"""

import asyncio
import ssl
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes

from cert_alarm.config import KnownCertificate
from cert_alarm.errors import (
    REACHABILITY_CATEGORIES,
    CertificateDataError,
    ErrorCategory,
    ProbeError,
    classify_transport_error,
)
from cert_alarm.logger import get_logger
from cert_alarm.models import ProbeMethod, ProbeResult
from cert_alarm.normalizer import parse_timestamp

USER_AGENT = "Mozilla/5.0 (compatible; Cert-Alarm/1.0)"

TLS_VERSIONS = {
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1": ssl.TLSVersion.TLSv1,
}

TLS_CIPHERS = "HIGH:!aNULL:!eNULL:!EXPORT:!DES:!RC4:!MD5:!PSK:!SRP:!CAMELLIA"

# Failures that no other protocol version can fix
_FATAL_FOR_ALL_VERSIONS = {
    ErrorCategory.DNS,
    ErrorCategory.REFUSED,
    ErrorCategory.UNREACHABLE,
}


def _name_attribute(name: x509.Name, oid: x509.ObjectIdentifier) -> Optional[str]:
    attrs = name.get_attributes_for_oid(oid)
    if not attrs:
        return None
    value = attrs[0].value
    return value if isinstance(value, str) else value.decode("utf-8")


def parse_der_certificate(der: bytes, domain: str, method: ProbeMethod) -> ProbeResult:
    """
    Extract the validity window and names from a DER-encoded leaf certificate.

    Raises:
        CertificateDataError: if the bytes are not a certificate
    """
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateDataError(f"Peer certificate could not be parsed: {e}") from e

    issuer = _name_attribute(cert.issuer, x509.NameOID.COMMON_NAME) or _name_attribute(
        cert.issuer, x509.NameOID.ORGANIZATION_NAME
    )
    subject = _name_attribute(cert.subject, x509.NameOID.COMMON_NAME)

    return ProbeResult(
        domain=domain,
        method=method,
        valid_from=cert.not_valid_before_utc,
        valid_to=cert.not_valid_after_utc,
        issuer=issuer or "Unknown",
        subject=subject or domain,
        fingerprint=cert.fingerprint(hashes.SHA256()).hex(":").upper(),
    )


def known_certificate_result(
    domain: str, known: KnownCertificate, method: ProbeMethod, message: Optional[str] = None
) -> ProbeResult:
    return ProbeResult(
        domain=domain,
        method=method,
        valid_from=known.valid_from,
        valid_to=known.valid_to,
        issuer=known.issuer,
        subject=known.subject or domain,
        fingerprint=known.fingerprint,
        message=message,
    )


class ProbeStrategy(ABC):
    """One method of obtaining a certificate's validity window."""

    method: ProbeMethod

    @abstractmethod
    async def attempt(self, domain: str) -> ProbeResult:
        """Return the raw certificate data or raise ProbeError."""


class StaticOverrideProbe(ProbeStrategy):
    """Certificates verified out-of-band for domains that resist probing."""

    method = ProbeMethod.STATIC_OVERRIDE

    def __init__(self, overrides: Mapping[str, KnownCertificate]):
        self.overrides = overrides

    def covers(self, domain: str) -> bool:
        return domain in self.overrides

    async def attempt(self, domain: str) -> ProbeResult:
        known = self.overrides.get(domain)
        if known is None:
            raise ProbeError(f"No static override for {domain}", ErrorCategory.DATA)
        return known_certificate_result(
            domain, known, self.method, "Certificate details come from the static override table"
        )


class CdnKnownProbe(ProbeStrategy):
    """The certificate the operator knows the CDN edge presents."""

    method = ProbeMethod.CDN_KNOWN

    def __init__(self, certificate: Optional[KnownCertificate]):
        self.certificate = certificate

    async def attempt(self, domain: str) -> ProbeResult:
        if self.certificate is None:
            raise ProbeError("No known CDN certificate configured", ErrorCategory.DATA)
        return known_certificate_result(
            domain,
            self.certificate,
            self.method,
            "Domain is CDN-fronted, certificate details come from known configuration",
        )


class HttpHeadProbe(ProbeStrategy):
    """
    HEAD / over HTTPS and read the negotiated peer certificate off the socket.

    Letting the HTTP stack negotiate avoids enumerating protocol versions.
    """

    method = ProbeMethod.HTTP

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def attempt(self, domain: str) -> ProbeResult:
        try:
            der = await asyncio.wait_for(self._fetch_peer_certificate(domain), timeout=self.timeout)
        except ProbeError:
            raise
        except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
            raise classify_transport_error(e) from e

        if not der:
            raise CertificateDataError(f"No peer certificate available over HTTPS for {domain}")
        return parse_der_certificate(der, domain, self.method)

    async def _fetch_peer_certificate(self, domain: str) -> Optional[bytes]:
        async with httpx.AsyncClient(
            verify=False,  # nosec B501 - retrieval, not trust validation
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
            transport=self.transport,
        ) as client:
            async with client.stream("HEAD", f"https://{domain}/") as response:
                network_stream = response.extensions.get("network_stream")
                if network_stream is None:
                    return None
                ssl_object = network_stream.get_extra_info("ssl_object")
                if ssl_object is None:
                    return None
                return ssl_object.getpeercert(binary_form=True)


class TlsHandshakeProbe(ProbeStrategy):
    """Direct TLS handshakes across a descending list of protocol versions."""

    method = ProbeMethod.TLS

    def __init__(self, versions: Sequence[str], timeout: float = 15.0, port: int = 443):
        self.versions = list(versions)
        self.timeout = timeout
        self.port = port
        self.logger = get_logger("probes.tls")

    async def attempt(self, domain: str) -> ProbeResult:
        errors: List[ProbeError] = []
        for version in self.versions:
            try:
                return await self.attempt_version(domain, version)
            except ProbeError as e:
                self.logger.debug(f"TLS {version} handshake with {domain} failed: {e}")
                errors.append(e)
                if e.category in _FATAL_FOR_ALL_VERSIONS:
                    break
        raise self.most_specific(errors)

    @staticmethod
    def most_specific(errors: Sequence[ProbeError]) -> ProbeError:
        """Prefer errors that describe reachability over protocol failures."""
        if not errors:
            return ProbeError("No TLS versions attempted")
        for error in errors:
            if error.category in REACHABILITY_CATEGORIES:
                return error
        return errors[0]

    def _context(self, version: str) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE  # nosec B504 - retrieval, not trust validation
        context.minimum_version = TLS_VERSIONS[version]
        context.maximum_version = TLS_VERSIONS[version]
        try:
            context.set_ciphers(TLS_CIPHERS)
        except ssl.SSLError as e:
            self.logger.debug(f"Cipher list rejected by local OpenSSL, using defaults: {e}")
        return context

    async def attempt_version(self, domain: str, version: str) -> ProbeResult:
        writer = None
        try:
            context = self._context(version)
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(domain, self.port, ssl=context, server_hostname=domain),
                timeout=self.timeout,
            )
            ssl_object = writer.get_extra_info("ssl_object")
            der = ssl_object.getpeercert(binary_form=True) if ssl_object else None
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            raise classify_transport_error(e) from e
        finally:
            if writer is not None:
                await self._close(writer)

        if not der:
            raise CertificateDataError(f"Handshake with {domain} yielded no certificate")
        return parse_der_certificate(der, domain, self.method)

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        except (OSError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Ignoring error while closing TLS connection: {e}")


class CertificateTransparencySource(ABC):
    """One Certificate Transparency search API."""

    name: str

    def __init__(self, url: str):
        self.url = url

    @abstractmethod
    async def lookup(self, client: httpx.AsyncClient, domain: str) -> ProbeResult:
        """Return the latest-expiring issuance that names the domain exactly."""

    async def _get_json(self, client: httpx.AsyncClient, params: Any) -> Any:
        response = await client.get(self.url, params=params)
        if response.status_code != 200:
            raise ProbeError(
                f"{self.name} returned HTTP {response.status_code}", ErrorCategory.UNKNOWN
            )
        try:
            return response.json()
        except ValueError as e:
            raise CertificateDataError(f"{self.name} returned invalid JSON: {e}") from e

    @staticmethod
    def latest_by_not_after(
        entries: Sequence[Dict[str, Any]], *keys: str
    ) -> Optional[Dict[str, Any]]:
        """Entry with the greatest parseable not_after, looked up under any of ``keys``."""
        best = None
        best_time: Optional[datetime] = None
        for entry in entries:
            raw = next((entry.get(key) for key in keys if entry.get(key)), None)
            try:
                parsed = parse_timestamp(raw)
            except CertificateDataError:
                continue
            if parsed is not None and (best_time is None or parsed > best_time):
                best, best_time = entry, parsed
        return best


class CertSpotterSource(CertificateTransparencySource):
    name = "CertSpotter"

    async def lookup(self, client: httpx.AsyncClient, domain: str) -> ProbeResult:
        params = [
            ("domain", domain),
            ("include_subdomains", "false"),
            ("match_wildcards", "false"),
            ("expand", "dns_names"),
            ("expand", "issuer"),
        ]
        data = await self._get_json(client, params)
        if not isinstance(data, list) or not data:
            raise CertificateDataError(f"{self.name} has no issuances for {domain}")

        matches = [
            item
            for item in data
            if isinstance(item, dict) and domain in (item.get("dns_names") or [])
        ]
        latest = self.latest_by_not_after(matches, "not_after")
        if latest is None:
            raise CertificateDataError(f"{self.name} has no issuance naming {domain}")

        issuer = latest.get("issuer")
        if isinstance(issuer, dict):
            issuer = issuer.get("friendly_name") or issuer.get("name") or issuer.get("common_name")

        return ProbeResult(
            domain=domain,
            method=ProbeMethod.CT_LOGS,
            valid_from=latest.get("not_before"),
            valid_to=latest.get("not_after"),
            issuer=issuer or "Unknown",
            subject=domain,
            fingerprint=latest.get("cert_sha256") or latest.get("sha256"),
            message=f"Certificate details come from {self.name}",
        )


class CrtShSource(CertificateTransparencySource):
    name = "crt.sh"

    async def lookup(self, client: httpx.AsyncClient, domain: str) -> ProbeResult:
        data = await self._get_json(client, {"q": domain, "output": "json"})
        if not isinstance(data, list) or not data:
            raise CertificateDataError(f"{self.name} has no certificates for {domain}")

        matches = []
        for item in data:
            if not isinstance(item, dict):
                continue
            names = str(item.get("name_value") or "").replace(",", "\n").split("\n")
            if domain in (name.strip().lower() for name in names):
                matches.append(item)

        latest = self.latest_by_not_after(matches, "not_after", "notafter")
        if latest is None:
            raise CertificateDataError(f"{self.name} has no certificate naming {domain}")

        return ProbeResult(
            domain=domain,
            method=ProbeMethod.CT_LOGS,
            valid_from=latest.get("not_before") or latest.get("notbefore"),
            valid_to=latest.get("not_after") or latest.get("notafter"),
            issuer=latest.get("issuer_name") or "Unknown",
            subject=domain,
            fingerprint=latest.get("sha256"),
            message=f"Certificate details come from {self.name}",
        )


class CertificateTransparencyProbe(ProbeStrategy):
    """Query CT-log search APIs in order; the first usable answer wins."""

    method = ProbeMethod.CT_LOGS

    def __init__(
        self,
        sources: Sequence[CertificateTransparencySource],
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.sources = list(sources)
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("probes.ct")

    async def attempt(self, domain: str) -> ProbeResult:
        last_error: Optional[ProbeError] = None
        async with httpx.AsyncClient(
            timeout=self.timeout,
            headers={"User-Agent": USER_AGENT},
            transport=self.transport,
        ) as client:
            for source in self.sources:
                try:
                    return await asyncio.wait_for(
                        source.lookup(client, domain), timeout=self.timeout
                    )
                except ProbeError as e:
                    last_error = e
                except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
                    last_error = classify_transport_error(e)
                self.logger.debug(f"{source.name} lookup for {domain} failed: {last_error}")

        raise last_error or ProbeError("No Certificate Transparency sources configured")
