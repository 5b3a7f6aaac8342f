"""
Tests for CDN proxy detection.
"""

import asyncio
import socket
from types import SimpleNamespace
from unittest.mock import patch

import dns.resolver
import pytest

from cert_alarm.config import Config
from cert_alarm.proxy import ProxyHeuristic


@pytest.fixture
def heuristic():
    return ProxyHeuristic(
        ipv4_prefixes=["104.", "172.67."],
        ipv6_prefixes=["2606:4700:"],
        domain_suffixes=["example-cdn.net"],
        dns_timeout=0.05,
    )


def answer(*addresses):
    return [SimpleNamespace(address=address) for address in addresses]


class FakeResolver:
    """Stand-in for the async DNS resolver, keyed by record type."""

    def __init__(self, answers=None, delay=None):
        self.answers = answers or {}
        self.delay = delay
        self.queries = []
        self.cancelled = False

    async def resolve(self, domain, record_type, lifetime=None):
        self.queries.append((domain, record_type, lifetime))
        if self.delay is not None:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        result = self.answers.get(record_type)
        if isinstance(result, Exception):
            raise result
        return result


class TestProxyHeuristic:
    """Test address and hostname matching."""

    def test_matches_ipv4_prefix(self, heuristic):
        assert heuristic.matches_addresses(["104.21.3.4"]) is True
        assert heuristic.matches_addresses(["8.8.8.8", "172.67.1.1"]) is True
        assert heuristic.matches_addresses(["8.8.8.8"]) is False
        assert heuristic.matches_addresses([]) is False

    def test_matches_ipv6_prefix(self, heuristic):
        assert heuristic.matches_addresses(["2606:4700:3030::ac43:a1b2"]) is True
        assert heuristic.matches_addresses(["2606:4700:3030::AC43:A1B2"]) is True
        assert heuristic.matches_addresses(["2001:4860:4860::8888"]) is False

    def test_matches_domain(self, heuristic):
        assert heuristic.matches_domain("shop.Example-CDN.net") is True
        assert heuristic.matches_domain("example.com") is False

    @pytest.mark.asyncio
    async def test_proxied_by_address(self, heuristic):
        with patch.object(heuristic, "_resolve", return_value=["104.16.1.1"]):
            assert await heuristic.is_likely_proxied("example.com") is True

    @pytest.mark.asyncio
    async def test_not_proxied_by_address(self, heuristic):
        with patch.object(heuristic, "_resolve", return_value=["8.8.8.8"]):
            assert await heuristic.is_likely_proxied("example.com") is False

    @pytest.mark.asyncio
    async def test_resolution_failure_falls_back_to_hostname(self, heuristic):
        with patch.object(
            heuristic, "_resolve", side_effect=socket.gaierror(socket.EAI_NONAME, "no name")
        ):
            assert await heuristic.is_likely_proxied("www.example-cdn.net") is True
            assert await heuristic.is_likely_proxied("example.com") is False

    @pytest.mark.asyncio
    async def test_slow_resolution_falls_back_to_hostname(self, heuristic):
        async def slow_resolve(domain):
            await asyncio.sleep(1)
            return ["104.16.1.1"]

        with patch.object(heuristic, "_resolve", side_effect=slow_resolve):
            assert await heuristic.is_likely_proxied("example.com") is False

    def test_from_config(self):
        config = Config(
            cdn_ipv4_prefixes=["198.51.100."],
            cdn_ipv6_prefixes=["2001:DB8:"],
            cdn_domain_suffixes=["Fronted.Example"],
            dns_timeout=2.5,
        )

        heuristic = ProxyHeuristic.from_config(config)

        assert heuristic.ipv4_prefixes == ("198.51.100.",)
        assert heuristic.ipv6_prefixes == ("2001:db8:",)
        assert heuristic.domain_suffixes == ("fronted.example",)
        assert heuristic.dns_timeout == 2.5


class TestDnsLookup:
    """Test address lookup through the async resolver."""

    @pytest.mark.asyncio
    async def test_collects_ipv4_and_ipv6(self, heuristic):
        fake = FakeResolver(
            {
                "A": answer("198.51.100.7", "198.51.100.7"),
                "AAAA": answer("2606:4700:3030::1"),
            }
        )
        heuristic._resolver = fake

        assert await heuristic._resolve("example.com") == ["198.51.100.7", "2606:4700:3030::1"]
        assert await heuristic.is_likely_proxied("example.com") is True
        assert fake.queries[0] == ("example.com", "A", 0.05)

    @pytest.mark.asyncio
    async def test_missing_aaaa_is_not_an_error(self, heuristic):
        heuristic._resolver = FakeResolver(
            {"A": answer("104.16.1.1"), "AAAA": dns.resolver.NoAnswer()}
        )

        assert await heuristic._resolve("example.com") == ["104.16.1.1"]

    @pytest.mark.asyncio
    async def test_nxdomain_falls_back_to_hostname(self, heuristic):
        heuristic._resolver = FakeResolver({"A": dns.resolver.NXDOMAIN()})

        assert await heuristic.is_likely_proxied("www.example-cdn.net") is True
        assert await heuristic.is_likely_proxied("example.com") is False

    @pytest.mark.asyncio
    async def test_timeout_cancels_lookup(self, heuristic):
        fake = FakeResolver({"A": answer("104.16.1.1")}, delay=1)
        heuristic._resolver = fake

        assert await heuristic.is_likely_proxied("example.com") is False
        assert fake.cancelled is True

    def test_resolver_uses_dns_timeout(self, heuristic):
        with patch("cert_alarm.proxy.dns.asyncresolver.Resolver") as resolver_class:
            resolver = heuristic._get_resolver()

        resolver_class.assert_called_once_with(configure=True)
        assert resolver.lifetime == 0.05
        assert resolver.timeout == 0.05
        assert heuristic._get_resolver() is resolver
