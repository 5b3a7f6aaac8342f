"""
Tests for the probe strategies.
"""

import re
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from cert_alarm.config import KnownCertificate
from cert_alarm.errors import CertificateDataError, ErrorCategory, ProbeError
from cert_alarm.models import ProbeMethod, ProbeResult
from cert_alarm.probes import (
    CdnKnownProbe,
    CertificateTransparencyProbe,
    CertSpotterSource,
    CrtShSource,
    HttpHeadProbe,
    StaticOverrideProbe,
    TlsHandshakeProbe,
    parse_der_certificate,
)

FINGERPRINT_PATTERN = re.compile(r"^([0-9A-F]{2}:){31}[0-9A-F]{2}$")
CERTSPOTTER_URL = "https://ct.example.test/v1/issuances"
CRTSH_URL = "https://crtsh.example.test/"


def make_certificate_der(common_name="example.com", issuer_cn="Test CA", days=90):
    """Build a self-signed EC certificate and return its DER bytes."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
            x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn),
        ]
    )
    not_before = datetime(2025, 1, 1, tzinfo=timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


def known_certificate():
    return KnownCertificate(
        issuer="Known CA",
        valid_from=datetime(2025, 1, 1, tzinfo=timezone.utc),
        valid_to=datetime(2026, 1, 1, tzinfo=timezone.utc),
        fingerprint="known-fp",
    )


class TestParseDerCertificate:
    """Test extraction from DER-encoded certificates."""

    def test_extracts_fields(self):
        der = make_certificate_der(days=90)

        result = parse_der_certificate(der, "example.com", ProbeMethod.TLS)

        assert result.domain == "example.com"
        assert result.method == ProbeMethod.TLS
        assert result.issuer == "Test CA"
        assert result.subject == "example.com"
        assert result.valid_from == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert result.valid_to == datetime(2025, 4, 1, tzinfo=timezone.utc)
        assert FINGERPRINT_PATTERN.match(result.fingerprint)

    def test_invalid_der(self):
        with pytest.raises(CertificateDataError):
            parse_der_certificate(b"not a certificate", "example.com", ProbeMethod.HTTP)


class TestKnownCertificateProbes:
    """Test the table-driven strategies."""

    @pytest.mark.asyncio
    async def test_static_override(self):
        probe = StaticOverrideProbe({"legacy.example.net": known_certificate()})

        assert probe.covers("legacy.example.net")
        assert not probe.covers("example.com")

        result = await probe.attempt("legacy.example.net")

        assert result.method == ProbeMethod.STATIC_OVERRIDE
        assert result.issuer == "Known CA"
        assert result.subject == "legacy.example.net"
        assert result.message

    @pytest.mark.asyncio
    async def test_static_override_missing(self):
        probe = StaticOverrideProbe({})

        with pytest.raises(ProbeError):
            await probe.attempt("example.com")

    @pytest.mark.asyncio
    async def test_cdn_known(self):
        probe = CdnKnownProbe(known_certificate())

        result = await probe.attempt("shop.example.com")

        assert result.method == ProbeMethod.CDN_KNOWN
        assert result.fingerprint == "known-fp"
        assert result.subject == "shop.example.com"

    @pytest.mark.asyncio
    async def test_cdn_known_unconfigured(self):
        with pytest.raises(ProbeError):
            await CdnKnownProbe(None).attempt("shop.example.com")


class TestTlsHandshakeProbe:
    """Test version iteration without touching the network."""

    @pytest.mark.asyncio
    async def test_falls_back_to_older_version(self):
        probe = TlsHandshakeProbe(["TLSv1.3", "TLSv1.2"], timeout=1)
        success = ProbeResult(domain="example.com", method=ProbeMethod.TLS, valid_to="2026-01-01")
        mock = AsyncMock(
            side_effect=[ProbeError("no shared cipher", ErrorCategory.HANDSHAKE), success]
        )

        with patch.object(probe, "attempt_version", mock):
            result = await probe.attempt("example.com")

        assert result is success
        assert [call.args[1] for call in mock.call_args_list] == ["TLSv1.3", "TLSv1.2"]

    @pytest.mark.asyncio
    async def test_dns_failure_stops_iteration(self):
        probe = TlsHandshakeProbe(["TLSv1.3", "TLSv1.2", "TLSv1.1"], timeout=1)
        mock = AsyncMock(side_effect=ProbeError("DNS resolution failed", ErrorCategory.DNS))

        with patch.object(probe, "attempt_version", mock):
            with pytest.raises(ProbeError) as exc_info:
                await probe.attempt("missing.example.com")

        assert exc_info.value.category == ErrorCategory.DNS
        assert mock.await_count == 1

    @pytest.mark.asyncio
    async def test_reports_most_specific_error(self):
        probe = TlsHandshakeProbe(["TLSv1.3", "TLSv1.2"], timeout=1)
        mock = AsyncMock(
            side_effect=[
                ProbeError("handshake failed", ErrorCategory.HANDSHAKE),
                ProbeError("Connection timed out", ErrorCategory.TIMEOUT),
            ]
        )

        with patch.object(probe, "attempt_version", mock):
            with pytest.raises(ProbeError) as exc_info:
                await probe.attempt("example.com")

        assert exc_info.value.category == ErrorCategory.TIMEOUT
        assert mock.await_count == 2

    def test_most_specific(self):
        handshake = ProbeError("handshake", ErrorCategory.HANDSHAKE)
        reset = ProbeError("reset", ErrorCategory.RESET)

        assert TlsHandshakeProbe.most_specific([handshake, reset]) is reset
        assert TlsHandshakeProbe.most_specific([handshake]) is handshake
        assert isinstance(TlsHandshakeProbe.most_specific([]), ProbeError)

    def test_context_pins_version(self):
        probe = TlsHandshakeProbe(["TLSv1.2"])

        context = probe._context("TLSv1.2")

        assert context.minimum_version == context.maximum_version
        assert context.check_hostname is False


class TestHttpHeadProbe:
    """Test HTTPS HEAD probing with a mock transport."""

    @pytest.mark.asyncio
    async def test_no_peer_certificate(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        probe = HttpHeadProbe(timeout=1, transport=transport)

        with pytest.raises(CertificateDataError):
            await probe.attempt("example.com")

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        probe = HttpHeadProbe(timeout=1, transport=httpx.MockTransport(handler))

        with pytest.raises(ProbeError) as exc_info:
            await probe.attempt("example.com")

        assert exc_info.value.category == ErrorCategory.TIMEOUT


class TestCertificateTransparencyProbe:
    """Test CT-log lookups against canned API responses."""

    def _probe(self, handler):
        return CertificateTransparencyProbe(
            [CertSpotterSource(CERTSPOTTER_URL), CrtShSource(CRTSH_URL)],
            timeout=1,
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_certspotter_latest_exact_match(self):
        issuances = [
            {
                "dns_names": ["example.com", "www.example.com"],
                "not_before": "2025-01-01T00:00:00Z",
                "not_after": "2025-04-01T00:00:00Z",
                "issuer": {"friendly_name": "Let's Encrypt"},
                "cert_sha256": "old",
            },
            {
                "dns_names": ["example.com"],
                "not_before": "2025-03-01T00:00:00Z",
                "not_after": "2025-06-01T00:00:00Z",
                "issuer": {"friendly_name": "Let's Encrypt"},
                "cert_sha256": "new",
            },
            {
                "dns_names": ["*.example.com"],
                "not_after": "2027-01-01T00:00:00Z",
                "cert_sha256": "wildcard",
            },
        ]

        def handler(request):
            assert request.url.host == "ct.example.test"
            assert request.url.params["domain"] == "example.com"
            return httpx.Response(200, json=issuances)

        result = await self._probe(handler).attempt("example.com")

        assert result.method == ProbeMethod.CT_LOGS
        assert result.fingerprint == "new"
        assert result.valid_to == "2025-06-01T00:00:00Z"
        assert result.issuer == "Let's Encrypt"

    @pytest.mark.asyncio
    async def test_falls_back_to_crtsh(self):
        certificates = [
            {
                "name_value": "other.example.com\nexample.com",
                "not_before": "2025-02-01T00:00:00",
                "not_after": "2025-05-02T00:00:00",
                "issuer_name": "C=US, O=Let's Encrypt, CN=R11",
            },
            {
                "name_value": "unrelated.example.org",
                "not_after": "2030-01-01T00:00:00",
                "issuer_name": "Other CA",
            },
        ]

        def handler(request):
            if request.url.host == "ct.example.test":
                return httpx.Response(200, json=[])
            assert request.url.params["output"] == "json"
            return httpx.Response(200, json=certificates)

        result = await self._probe(handler).attempt("example.com")

        assert result.valid_to == "2025-05-02T00:00:00"
        assert "R11" in result.issuer

    @pytest.mark.asyncio
    async def test_all_sources_fail(self):
        def handler(request):
            if request.url.host == "ct.example.test":
                return httpx.Response(429)
            return httpx.Response(200, text="<html>not json</html>")

        with pytest.raises(ProbeError) as exc_info:
            await self._probe(handler).attempt("example.com")

        assert exc_info.value.category == ErrorCategory.DATA

    @pytest.mark.asyncio
    async def test_no_sources(self):
        probe = CertificateTransparencyProbe([], timeout=1)

        with pytest.raises(ProbeError):
            await probe.attempt("example.com")
