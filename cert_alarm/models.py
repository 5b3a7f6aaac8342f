"""
Data model for certificate observations, sweeps and dispatch claims.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union


class CheckStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ProbeMethod(str, Enum):
    """Tag identifying which probe strategy produced a record."""

    STATIC_OVERRIDE = "static-override"
    HTTP = "http"
    TLS = "tls"
    CDN_KNOWN = "cdn-known"
    CT_LOGS = "ct-logs"


# Raw strategies hand back datetimes or whatever string format their source uses
Timestamp = Union[datetime, str]


@dataclass(frozen=True)
class ProbeResult:
    """Raw output of one probe strategy, before normalization."""

    domain: str
    method: ProbeMethod
    valid_to: Optional[Timestamp]
    valid_from: Optional[Timestamp] = None
    issuer: Optional[str] = None
    subject: Optional[str] = None
    fingerprint: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class CertificateRecord:
    """One observation of a domain's certificate state."""

    domain: str
    status: CheckStatus
    observed_at: datetime
    issuer: Optional[str] = None
    subject: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    fingerprint: Optional[str] = None
    method: Optional[ProbeMethod] = None
    error_message: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.status == CheckStatus.SUCCESS

    def is_expiring(self, warning_days: int) -> bool:
        """Successful record inside the warning window (expired certificates included)."""
        return (
            self.is_success
            and self.days_until_expiry is not None
            and self.days_until_expiry <= warning_days
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "status": self.status.value,
            "issuer": self.issuer,
            "subject": self.subject,
            "valid_from": self.valid_from.isoformat() if self.valid_from else None,
            "valid_to": self.valid_to.isoformat() if self.valid_to else None,
            "days_until_expiry": self.days_until_expiry,
            "fingerprint": self.fingerprint,
            "method": self.method.value if self.method else None,
            "error_message": self.error_message,
            "message": self.message,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class SweepResult:
    """Aggregate of one full domain sweep."""

    records: List[CertificateRecord]
    warning_days: int
    sweep_time: datetime
    duration: float = 0.0
    source: str = "manual"
    expiring_records: List[CertificateRecord] = field(default_factory=list)
    failed_records: List[CertificateRecord] = field(default_factory=list)
    healthy: int = 0

    @classmethod
    def from_records(
        cls,
        records: Sequence[CertificateRecord],
        warning_days: int,
        sweep_time: datetime,
        duration: float = 0.0,
        source: str = "manual",
    ) -> "SweepResult":
        """Partition records into healthy, expiring and failed."""
        expiring = [r for r in records if r.is_expiring(warning_days)]
        failed = [r for r in records if not r.is_success]
        healthy = len(records) - len(expiring) - len(failed)
        return cls(
            records=list(records),
            warning_days=warning_days,
            sweep_time=sweep_time,
            duration=duration,
            source=source,
            expiring_records=expiring,
            failed_records=failed,
            healthy=healthy,
        )

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def expiring(self) -> int:
        return len(self.expiring_records)

    @property
    def failed(self) -> int:
        return len(self.failed_records)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "healthy": self.healthy,
            "expiring": self.expiring,
            "failed": self.failed,
            "warning_days": self.warning_days,
            "records": [r.to_dict() for r in self.records],
            "expiring_records": [r.to_dict() for r in self.expiring_records],
            "failed_records": [r.to_dict() for r in self.failed_records],
            "sweep_time": self.sweep_time.isoformat(),
            "duration": round(self.duration, 3),
            "source": self.source,
        }


@dataclass(frozen=True)
class DispatchClaim:
    """Idempotency row for one dispatch window."""

    window_key: str
    claimed_at: datetime
    sent_at: Optional[datetime] = None

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None
