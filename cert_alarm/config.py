"""
Configuration management for Cert Alarm.
"""

import ipaddress
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator

# RFC-1123 style labels, alphabetic TLD
DOMAIN_PATTERN = re.compile(r"^(?:(?!-)[A-Za-z0-9-]{1,63}(?<!-)\.)+[A-Za-z]{2,}$")
MAX_DOMAIN_LENGTH = 253

CRON_FIELD_COUNT = 5


def is_valid_domain(domain: Any) -> bool:
    """Check a bare hostname (no scheme, port or path)."""
    if not domain or not isinstance(domain, str):
        return False
    if len(domain) > MAX_DOMAIN_LENGTH:
        return False
    return DOMAIN_PATTERN.match(domain) is not None


class KnownCertificate(BaseModel):
    """Certificate details verified out-of-band by the operator."""

    issuer: str
    subject: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_to: datetime
    fingerprint: Optional[str] = None

    @field_validator("valid_from", "valid_to")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ScheduleConfig(BaseModel):
    """Trigger cadence for scheduled sweeps."""

    enabled: bool = Field(default=True)
    cron_expression: str = Field(default="0 9 * * *")
    timezone: str = Field(default="Asia/Shanghai")

    @field_validator("cron_expression")
    @classmethod
    def validate_cron_expression(cls, v: str) -> str:
        """Validate the crontab has exactly five fields."""
        fields = v.split()
        if len(fields) != CRON_FIELD_COUNT:
            raise ValueError(
                f"cron_expression must have {CRON_FIELD_COUNT} fields, got {len(fields)}: '{v}'"
            )
        return " ".join(fields)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate the IANA timezone name."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'") from e
        return v


class DailyReportConfig(BaseModel):
    """Daily summary report settings."""

    enabled: bool = Field(default=False)
    allow_same_day_resend: bool = Field(default=False)


class SmtpConfig(BaseModel):
    """Outbound mail settings."""

    host: str = Field(default="smtp.gmail.com")
    port: int = Field(default=587, ge=1, le=65535)
    secure: Optional[bool] = None  # implicit TLS, defaults to port == 465
    require_tls: bool = Field(default=False)
    username: Optional[str] = None
    password: Optional[str] = None
    from_email: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("recipients")
    @classmethod
    def strip_recipients(cls, v: List[str]) -> List[str]:
        """Drop blank recipient entries."""
        return [email.strip() for email in v if email and email.strip()]

    @property
    def use_implicit_tls(self) -> bool:
        if self.secure is not None:
            return self.secure
        return self.port == 465

    @property
    def sender(self) -> Optional[str]:
        return self.from_email or self.username


class Config(BaseModel):
    """Configuration model for Cert Alarm."""

    # Server settings
    port: int = Field(default=3000, ge=1, le=65535)
    bind_address: str = Field(default="0.0.0.0")  # nosec B104

    # TLS settings for the API endpoint
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    # Storage
    database_path: str = Field(default="./data/cert-alarm.db")

    # Monitored domains
    domains: List[str] = Field(default_factory=list)
    warning_days: int = Field(default=30, ge=1, le=365)

    # Scheduling and notifications
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    daily_report: DailyReportConfig = Field(default_factory=DailyReportConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)

    # Probe settings
    workers: int = Field(default=4, ge=1, le=32)
    probe_timeout: float = Field(default=15.0, gt=0)
    dns_timeout: float = Field(default=5.0, gt=0)
    manual_check_timeout: float = Field(default=30.0, gt=0)
    tls_versions: List[str] = Field(
        default_factory=lambda: ["TLSv1.3", "TLSv1.2", "TLSv1.1", "TLSv1"]
    )

    # Proxy heuristic
    cdn_ipv4_prefixes: List[str] = Field(default_factory=lambda: ["104.", "172."])
    cdn_ipv6_prefixes: List[str] = Field(
        default_factory=lambda: ["2606:4700:", "2606:4700:3036:", "2606:4700:3035:"]
    )
    cdn_domain_suffixes: List[str] = Field(
        default_factory=lambda: ["cpayservice.com", "cpaylink.com", "swarapay.com"]
    )

    # Static certificate tables
    static_overrides: Dict[str, KnownCertificate] = Field(default_factory=dict)
    # Operator data: the certificate the CDN edge presents, kept current by hand
    cdn_certificate: Optional[KnownCertificate] = None

    # Certificate Transparency endpoints
    certspotter_url: str = Field(default="https://api.certspotter.com/v1/issuances")
    crtsh_url: str = Field(default="https://crt.sh/")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    # Operation modes
    dry_run: bool = Field(default=False)
    hot_reload: bool = Field(default=True)

    # Security settings
    allowed_ips: List[str] = Field(default_factory=lambda: ["127.0.0.1", "::1"])
    enable_ip_whitelist: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("domains")
    @classmethod
    def normalize_domains(cls, v: List[str]) -> List[str]:
        """Lower-case and de-duplicate domains, keeping configured order."""
        seen = set()
        domains = []
        for domain in v:
            cleaned = domain.strip().lower()
            if not cleaned or cleaned in seen:
                continue
            if not is_valid_domain(cleaned):
                # Kept so the sweep reports it as a per-domain error
                logging.warning(f"Configured domain looks malformed: {domain}")
            seen.add(cleaned)
            domains.append(cleaned)
        return domains

    @field_validator("static_overrides")
    @classmethod
    def normalize_override_keys(
        cls, v: Dict[str, KnownCertificate]
    ) -> Dict[str, KnownCertificate]:
        """Override table is keyed by lower-case domain."""
        return {domain.strip().lower(): cert for domain, cert in v.items()}

    @field_validator("tls_versions")
    @classmethod
    def validate_tls_versions(cls, v: List[str]) -> List[str]:
        """Only known protocol names are accepted."""
        known = {"TLSv1.3", "TLSv1.2", "TLSv1.1", "TLSv1"}
        unknown = [version for version in v if version not in known]
        if unknown:
            raise ValueError(f"Unknown TLS versions {unknown}, expected any of {sorted(known)}")
        if not v:
            raise ValueError("At least one TLS version is required")
        return v

    @field_validator("allowed_ips")
    @classmethod
    def validate_allowed_ips(cls, v: List[str]) -> List[str]:
        """Validate IP addresses and CIDR blocks in allowed_ips list."""
        validated_ips = []
        for ip_str in v:
            try:
                if "/" in ip_str:
                    ipaddress.ip_network(ip_str, strict=False)
                else:
                    ipaddress.ip_address(ip_str)
                validated_ips.append(ip_str)
            except (ipaddress.AddressValueError, ValueError) as e:
                logging.error(f"Invalid IP address or network '{ip_str}': {e}")

        # Ensure localhost is always allowed for health checks
        for localhost in ["127.0.0.1", "::1"]:
            if localhost not in validated_ips:
                validated_ips.append(localhost)
                logging.info(f"Added {localhost} to allowed IPs for localhost access")

        return validated_ips

    def get_domains(self) -> List[str]:
        return list(self.domains)

    def get_schedule_config(self) -> ScheduleConfig:
        return self.schedule.model_copy()

    def get_warning_days(self) -> int:
        return self.warning_days

    def get_report_recipients(self) -> List[str]:
        return list(self.smtp.recipients)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Config object
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        else:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

    env_overrides = _get_env_overrides()
    for key, value in env_overrides.items():
        if isinstance(value, dict):
            section = dict(config_data.get(key) or {})
            section.update(value)
            config_data[key] = section
        else:
            config_data[key] = value

    return Config(**config_data)


def _to_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _to_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _get_env_overrides() -> dict:
    """Get configuration overrides from environment variables."""
    env_mapping: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "CERT_ALARM_PORT": ("port", int),
        "CERT_ALARM_BIND_ADDRESS": ("bind_address", str),
        "CERT_ALARM_TLS_CERT": ("tls_cert", str),
        "CERT_ALARM_TLS_KEY": ("tls_key", str),
        "CERT_ALARM_DATABASE_PATH": ("database_path", str),
        "CERT_ALARM_WARNING_DAYS": ("warning_days", int),
        "CERT_ALARM_WORKERS": ("workers", int),
        "CERT_ALARM_PROBE_TIMEOUT": ("probe_timeout", float),
        "CERT_ALARM_DNS_TIMEOUT": ("dns_timeout", float),
        "CERT_ALARM_LOG_LEVEL": ("log_level", str),
        "CERT_ALARM_LOG_FILE": ("log_file", str),
        "CERT_ALARM_DRY_RUN": ("dry_run", _to_bool),
        "CERT_ALARM_HOT_RELOAD": ("hot_reload", _to_bool),
        "CERT_ALARM_ENABLE_IP_WHITELIST": ("enable_ip_whitelist", _to_bool),
        "CERT_ALARM_DOMAINS": ("domains", _to_list),
        "CERT_ALARM_ALLOWED_IPS": ("allowed_ips", _to_list),
    }

    # Nested sections, merged into whatever the file provided
    section_mapping: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "CERT_ALARM_SCHEDULE_ENABLED": ("schedule", "enabled", _to_bool),
        "CERT_ALARM_CRON_EXPRESSION": ("schedule", "cron_expression", str),
        "CERT_ALARM_TIMEZONE": ("schedule", "timezone", str),
        "CERT_ALARM_DAILY_REPORT_ENABLED": ("daily_report", "enabled", _to_bool),
        "CERT_ALARM_ALLOW_SAME_DAY_RESEND": ("daily_report", "allow_same_day_resend", _to_bool),
        "SMTP_HOST": ("smtp", "host", str),
        "SMTP_PORT": ("smtp", "port", int),
        "SMTP_SECURE": ("smtp", "secure", _to_bool),
        "SMTP_REQUIRE_TLS": ("smtp", "require_tls", _to_bool),
        "SMTP_USER": ("smtp", "username", str),
        "SMTP_PASS": ("smtp", "password", str),
        "FROM_EMAIL": ("smtp", "from_email", str),
        "CERT_ALARM_RECIPIENTS": ("smtp", "recipients", _to_list),
    }

    overrides: Dict[str, Any] = {}
    for env_var, (config_key, converter) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    for env_var, (section, config_key, converter) in section_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides.setdefault(section, {})[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    return overrides


def create_example_config(output_path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example_config = {
        "port": 3000,
        "bind_address": "0.0.0.0",  # nosec B104
        "database_path": "./data/cert-alarm.db",
        "domains": ["example.com", "www.example.org"],
        "warning_days": 30,
        "schedule": {
            "enabled": True,
            "cron_expression": "0 9 * * *",
            "timezone": "Asia/Shanghai",
        },
        "daily_report": {"enabled": False, "allow_same_day_resend": False},
        "smtp": {
            "host": "smtp.example.com",
            "port": 587,
            "username": "alerts@example.com",
            "password": "change-me",
            "from_email": "alerts@example.com",
            "recipients": ["ops@example.com"],
        },
        "workers": 4,
        "probe_timeout": 15,
        "dns_timeout": 5,
        "static_overrides": {
            "legacy.example.net": {
                "issuer": "Example CA",
                "valid_from": "2025-01-01T00:00:00Z",
                "valid_to": "2027-01-01T00:00:00Z",
                "fingerprint": "verified-out-of-band",
            }
        },
        "cdn_certificate": {
            "issuer": "WE1",
            "valid_from": "2026-01-01T00:00:00Z",
            "valid_to": "2027-01-01T00:00:00Z",
            "fingerprint": "replace-with-current-edge-certificate",
        },
        "log_level": "INFO",
        "hot_reload": True,
        "allowed_ips": ["127.0.0.1", "::1", "192.168.1.0/24"],
        "enable_ip_whitelist": True,
    }

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)
