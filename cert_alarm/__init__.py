"""
Cert Alarm

Monitors TLS certificates of a configured set of domains, records every check,
and sends scheduled, idempotent expiry alerts and daily reports by email.
"""

__version__ = "1.0.0"
__author__ = "Cert Alarm Team"
__description__ = "TLS certificate expiry monitoring with scheduled email alerts"

from cert_alarm.config import Config
from cert_alarm.metrics import MetricsCollector
from cert_alarm.resolver import CertificateResolver
from cert_alarm.scheduler import CertificateScheduler

__all__ = [
    "Config",
    "CertificateResolver",
    "CertificateScheduler",
    "MetricsCollector",
]
