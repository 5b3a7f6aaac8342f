"""
FastAPI application for Cert Alarm.
"""

import asyncio
import ipaddress
import os
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from cert_alarm import __version__
from cert_alarm.config import Config, is_valid_domain
from cert_alarm.logger import get_logger
from cert_alarm.metrics import MetricsCollector
from cert_alarm.scheduler import CertificateScheduler

REDACTED = "***REDACTED***"


class DailyReportRequest(BaseModel):
    force: bool = False


class EmailTestRequest(BaseModel):
    recipients: Optional[List[str]] = None


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan handler that logs startup and shutdown of the API."""
    logger = get_logger("api")
    logger.info("Cert Alarm API started")
    try:
        yield
    except asyncio.CancelledError:
        # Expected when uvicorn is stopped
        pass
    finally:
        logger.info("Cert Alarm API shutting down")


def redact_config(config: Config) -> Dict[str, Any]:
    """Configuration as JSON with secrets replaced."""
    config_dict: Dict[str, Any] = config.model_dump(mode="json")

    if config_dict.get("tls_key"):
        config_dict["tls_key"] = REDACTED
    config_dict["allowed_ips"] = [f"{REDACTED} ({len(config.allowed_ips)} IPs/networks)"]

    smtp = config_dict.get("smtp", {})
    if smtp.get("password"):
        smtp["password"] = REDACTED
    if smtp.get("username"):
        smtp["username"] = REDACTED

    return config_dict


def create_app(
    scheduler: CertificateScheduler,
    metrics: MetricsCollector,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    The current configuration is always read from the scheduler so hot reloads
    are picked up without rebuilding the app.

    Args:
        scheduler: Certificate scheduler instance
        metrics: Metrics collector instance

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Cert Alarm",
        description="TLS certificate expiry monitoring with scheduled email alerts",
        version=__version__,
        lifespan=lifespan_override or lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger = get_logger("api")

    @app.middleware("http")
    async def ip_whitelist_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Middleware to enforce IP whitelisting."""
        config = scheduler.config
        if not config.enable_ip_whitelist:
            return await call_next(request)

        client_ip = request.client.host if request.client else None

        # Handle case where client IP is not available (e.g., in tests)
        if not client_ip:
            logger.warning("Unable to determine client IP address, allowing request")
            return await call_next(request)

        if not _ip_allowed(client_ip, config.allowed_ips, logger):
            logger.warning(f"Access denied for IP address: {client_ip}")
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Access forbidden",
                    "message": "Your IP address is not allowed to access this service",
                    "client_ip": client_ip,
                },
            )

        logger.debug(f"Access granted for IP address: {client_ip}")
        return await call_next(request)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            metrics_data: str = metrics.get_metrics()
            return PlainTextResponse(content=metrics_data, media_type=metrics.get_content_type())
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            status = scheduler.get_status()
            health_status = {
                "scheduler_active": status["active"],
                "sweeping": status["sweeping"],
                "last_sweep_time": status["last_sweep_time"],
                "domains_configured": len(scheduler.config.domains),
                **metrics.get_registry_status(),
                **_get_system_health(scheduler.config),
                "status": "healthy",
                "version": __version__,
            }
            return JSONResponse(content=health_status)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    @app.get("/api/status", response_class=JSONResponse)
    async def get_status() -> JSONResponse:
        return JSONResponse(content=scheduler.get_status())

    @app.post("/api/check-certificates", response_class=JSONResponse)
    async def check_certificates() -> JSONResponse:
        config = scheduler.config
        if config.dry_run:
            return JSONResponse(
                content={"message": "Check not performed - dry run mode enabled"}, status_code=200
            )

        logger.info("Manual certificate check triggered via API")
        try:
            # The sweep keeps running past the timeout and still updates the cache
            sweep = await asyncio.wait_for(
                asyncio.shield(scheduler.manual_check()), timeout=config.manual_check_timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Manual check exceeded {config.manual_check_timeout}s, continuing in background"
            )
            raise HTTPException(
                status_code=504,
                detail="Certificate check is taking longer than expected, "
                "results will be available from /api/results",
            ) from e
        except Exception as e:
            logger.error(f"Manual check failed: {e}")
            raise HTTPException(status_code=500, detail=f"Check failed: {e}") from e

        return JSONResponse(content=sweep.to_dict())

    @app.get("/api/results", response_class=JSONResponse)
    async def get_results() -> JSONResponse:
        sweep = scheduler.get_last_sweep_result()
        if sweep is None:
            raise HTTPException(status_code=404, detail="No certificate checks have run yet")
        return JSONResponse(content=sweep.to_dict())

    @app.get("/api/certificate/{domain}", response_class=JSONResponse)
    async def check_certificate(domain: str) -> JSONResponse:
        domain = domain.strip().lower()
        if not is_valid_domain(domain):
            raise HTTPException(status_code=400, detail=f"Invalid domain name: {domain}")
        record = await scheduler.resolver.resolve(domain)
        return JSONResponse(content=record.to_dict())

    @app.get("/api/history/{domain}", response_class=JSONResponse)
    async def get_history(domain: str, limit: int = 50) -> JSONResponse:
        records = scheduler.store.history(domain.strip().lower(), limit=max(1, min(limit, 500)))
        return JSONResponse(
            content={"domain": domain, "records": [record.to_dict() for record in records]}
        )

    @app.post("/api/daily-report", response_class=JSONResponse)
    async def send_daily_report(request: Optional[DailyReportRequest] = None) -> JSONResponse:
        force = request.force if request else False
        outcome = await scheduler.execute_daily_report(force=force)
        if outcome is None:
            raise HTTPException(
                status_code=400, detail="Daily report is disabled or has no recipients"
            )
        return JSONResponse(content={"outcome": outcome.value})

    @app.post("/api/send-test-email", response_class=JSONResponse)
    async def send_test_email(request: Optional[EmailTestRequest] = None) -> JSONResponse:
        recipients = request.recipients if request and request.recipients else None
        recipients = recipients or scheduler.config.get_report_recipients()
        sent = await scheduler.mailer.send_test_email(recipients)
        if not sent:
            raise HTTPException(status_code=502, detail="Test email could not be sent")
        return JSONResponse(content={"message": f"Test email sent to {len(recipients)} recipients"})

    @app.post("/api/verify-email-config", response_class=JSONResponse)
    async def verify_email_config() -> JSONResponse:
        verified = await scheduler.mailer.verify_connection()
        if not verified:
            raise HTTPException(status_code=502, detail="SMTP connection could not be verified")
        return JSONResponse(content={"message": "SMTP connection verified"})

    @app.get("/config", response_class=JSONResponse)
    async def get_config() -> JSONResponse:
        try:
            return JSONResponse(content=redact_config(scheduler.config))
        except Exception as e:
            logger.error(f"Failed to get configuration: {e}")
            raise HTTPException(status_code=500, detail="Failed to get configuration") from e

    return app


def _ip_allowed(client_ip: str, allowed_ips: List[str], logger) -> bool:
    for allowed_ip in allowed_ips:
        try:
            if "/" in allowed_ip:
                network = ipaddress.ip_network(allowed_ip, strict=False)
                if ipaddress.ip_address(client_ip) in network:
                    return True
            elif client_ip == allowed_ip:
                return True
        except (ipaddress.AddressValueError, ValueError) as e:
            logger.warning(f"Invalid IP configuration '{allowed_ip}': {e}")
    return False


def _get_system_health(config: Config) -> Dict[str, Any]:
    health_data: Dict[str, Any] = {"hot_reload_enabled": config.hot_reload}

    log_file_writable = True
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        log_file_writable = os.access(log_dir if log_dir else ".", os.W_OK)
    health_data["log_file_writable"] = log_file_writable

    db_dir = Path(config.database_path).parent
    try:
        usage = shutil.disk_usage(db_dir)
        health_data["database"] = {
            "path": Path(config.database_path).name,
            "writable": os.access(db_dir, os.W_OK),
            "free_bytes": int(usage.free),
            "status": "ok" if usage.free > 1024**3 else "warning",
        }
    except OSError as e:
        health_data["database"] = {"status": "error", "error": str(e)}

    return health_data
