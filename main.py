#!/usr/bin/env python3
"""
Cert Alarm - Main Application Entry Point
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI

from cert_alarm import __version__
from cert_alarm.api import create_app
from cert_alarm.config import Config, create_example_config, load_config
from cert_alarm.hot_reload import HotReloadManager
from cert_alarm.logger import setup_logging
from cert_alarm.mailer import EmailService
from cert_alarm.metrics import MetricsCollector
from cert_alarm.models import SweepResult
from cert_alarm.resolver import CertificateResolver
from cert_alarm.scheduler import CertificateScheduler
from cert_alarm.store import CertificateStore


class CertAlarmMonitor:
    """Main application class for Cert Alarm."""

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        self.config: Optional[Config] = None
        self.store: Optional[CertificateStore] = None
        self.resolver: Optional[CertificateResolver] = None
        self.scheduler: Optional[CertificateScheduler] = None
        self.metrics: Optional[MetricsCollector] = None
        self.hot_reload: Optional[HotReloadManager] = None
        self.app: Optional[FastAPI] = None
        self.config_path = config_path
        self.dry_run = dry_run
        self._shutdown_event = asyncio.Event()
        # Initialize logger early to avoid AttributeError
        self.logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Initialize all application components."""
        try:
            self.config = load_config(self.config_path)
            if self.dry_run:
                self.config.dry_run = True

            setup_logging(self.config)
            self.logger.info("Initializing Cert Alarm")

            self.store = CertificateStore(self.config.database_path)
            self.metrics = MetricsCollector()
            self.resolver = CertificateResolver.from_config(self.config)
            self.scheduler = CertificateScheduler(
                config=self.config,
                resolver=self.resolver,
                store=self.store,
                mailer=EmailService(self.config.smtp),
                metrics=self.metrics,
            )

            if self.dry_run:
                self.logger.info("Cert Alarm initialized for a single dry-run sweep")
                return

            if self.config.hot_reload:
                self.hot_reload = HotReloadManager(
                    config=self.config, scheduler=self.scheduler, config_path=self.config_path
                )
                await self.hot_reload.start()

            self.app = create_app(scheduler=self.scheduler, metrics=self.metrics)

            self.scheduler.start()

            self.logger.info("Cert Alarm initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            raise

    async def run_dry(self) -> SweepResult:
        """Run one sweep without starting the server or sending email."""
        if not self.scheduler:
            await self.initialize()
        assert self.scheduler is not None, "Scheduler should be initialized"

        self.logger.info("Running in dry-run mode - checking certificates only")
        try:
            return await self.scheduler.manual_check()
        finally:
            await self.shutdown()

    async def run(self) -> None:
        """Run the application server."""
        if not self.app:
            await self.initialize()

        # At this point, config is guaranteed to be set by initialize()
        assert self.config is not None, "Config should be initialized"

        config_dict = {
            "app": self.app,
            "host": self.config.bind_address,
            "port": self.config.port,
            "log_level": self.config.log_level.lower(),
            "access_log": True,
        }

        if self.config.tls_cert and self.config.tls_key:
            config_dict.update(
                {
                    "ssl_keyfile": self.config.tls_key,
                    "ssl_certfile": self.config.tls_cert,
                }
            )
            self.logger.info(
                f"Starting HTTPS server on {self.config.bind_address}:{self.config.port}"
            )
        else:
            self.logger.info(
                f"Starting HTTP server on {self.config.bind_address}:{self.config.port}"
            )

        for sig in [signal.SIGTERM, signal.SIGINT]:
            signal.signal(sig, self._signal_handler)

        server = uvicorn.Server(uvicorn.Config(**config_dict))  # type: ignore[arg-type]

        try:
            await server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal")
        finally:
            await self.shutdown()

    def _signal_handler(self, signum: int, frame: Optional[object]) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        self.logger.info("Starting graceful shutdown")

        if self.hot_reload:
            await self.hot_reload.stop()

        if self.scheduler:
            await self.scheduler.shutdown()

        if self.store:
            self.store.close()

        self.logger.info("Graceful shutdown completed")


async def check_single_domain(config_path: Optional[str], domain: str) -> dict:
    """Resolve one domain with the configured probes and return the record."""
    config = load_config(config_path)
    setup_logging(config)
    resolver = CertificateResolver.from_config(config)
    record = await resolver.resolve(domain.strip().lower())
    return record.to_dict()


@click.command()
@click.option(
    "--config",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--version", "-v", is_flag=True, help="Show version information")
@click.option(
    "--dry-run", is_flag=True, help="Run one certificate sweep, print a summary and exit"
)
@click.option("--check", "check_domain", metavar="DOMAIN", help="Check one domain and exit")
@click.option(
    "--create-config",
    type=click.Path(path_type=Path),
    help="Write an example configuration file and exit",
)
def main(
    config: Optional[Path],
    version: bool,
    dry_run: bool,
    check_domain: Optional[str],
    create_config: Optional[Path],
) -> None:
    """Cert Alarm - Monitor TLS certificates and email alerts before they expire."""

    if version:
        click.echo(f"Cert Alarm v{__version__}")
        return

    if create_config:
        create_example_config(str(create_config))
        click.echo(f"Example configuration written to {create_config}")
        return

    config_path = str(config) if config else None

    try:
        if check_domain:
            record = asyncio.run(check_single_domain(config_path, check_domain))
            click.echo(json.dumps(record, indent=2, ensure_ascii=False))
            if record["status"] != "success":
                sys.exit(2)
            return

        monitor = CertAlarmMonitor(config_path, dry_run=dry_run)
        if dry_run:
            sweep = asyncio.run(monitor.run_dry())
            click.echo(
                f"Checked {sweep.total} domains: {sweep.healthy} healthy, "
                f"{sweep.expiring} expiring, {sweep.failed} failed"
            )
            for record in sweep.expiring_records:
                click.echo(f"  EXPIRING {record.domain}: {record.days_until_expiry} days")
            for record in sweep.failed_records:
                click.echo(f"  FAILED   {record.domain}: {record.error_message}")
            return

        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        click.echo("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        click.echo(f"Application failed: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
