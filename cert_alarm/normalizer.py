"""
Normalization of raw probe output into canonical certificate records.

Every strategy goes through ``normalize`` so days-until-expiry is computed by
exactly one function.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from cert_alarm.errors import CertificateDataError
from cert_alarm.models import CertificateRecord, CheckStatus, ProbeResult, Timestamp

SECONDS_PER_DAY = 86400

# Formats seen from OpenSSL peer certs, CT-log APIs and operator configuration
_TIMESTAMP_FORMATS = (
    "%b %d %H:%M:%S %Y %Z",
    "%b %d %H:%M:%S %Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_days_until_expiry(valid_to: datetime, now: datetime) -> int:
    """
    Whole days remaining, rounded up and never negative.

    Args:
        valid_to: Certificate expiry (timezone-aware)
        now: Current time (timezone-aware)

    Returns:
        ceil((valid_to - now) / 1 day), clamped to 0
    """
    remaining = (valid_to - now).total_seconds() / SECONDS_PER_DAY
    return max(0, math.ceil(remaining))


def parse_timestamp(value: Optional[Timestamp]) -> Optional[datetime]:
    """
    Parse the timestamp shapes produced by the probe strategies.

    Naive values are taken as UTC. Returns None for empty input and raises
    CertificateDataError when a non-empty value cannot be parsed.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = " ".join(str(value).split())
        if not text:
            return None
        parsed = _parse_text(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_text(text: str) -> datetime:
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso_text)
    except ValueError:
        pass

    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    raise CertificateDataError(f"Unparseable certificate timestamp: {text!r}")


def normalize(raw: ProbeResult, now: datetime) -> CertificateRecord:
    """
    Convert a raw probe result into a successful CertificateRecord.

    Args:
        raw: Output of a probe strategy
        now: Wall-clock time of the resolution

    Returns:
        Canonical record

    Raises:
        CertificateDataError: if the result carries no usable expiry
    """
    valid_to = parse_timestamp(raw.valid_to)
    if valid_to is None:
        raise CertificateDataError(f"{raw.method.value} probe returned no expiry for {raw.domain}")

    try:
        valid_from = parse_timestamp(raw.valid_from)
    except CertificateDataError:
        # Only the expiry is load-bearing
        valid_from = None

    return CertificateRecord(
        domain=raw.domain,
        status=CheckStatus.SUCCESS,
        observed_at=now,
        issuer=raw.issuer or "Unknown",
        subject=raw.subject or raw.domain,
        valid_from=valid_from,
        valid_to=valid_to,
        days_until_expiry=compute_days_until_expiry(valid_to, now),
        fingerprint=raw.fingerprint,
        method=raw.method,
        message=raw.message,
    )


def error_record(domain: str, message: str, now: datetime) -> CertificateRecord:
    """Build the error record for a domain whose resolution failed."""
    return CertificateRecord(
        domain=domain,
        status=CheckStatus.ERROR,
        observed_at=now,
        error_message=message,
    )
