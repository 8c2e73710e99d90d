#!/usr/bin/env python3
"""
Blood Exchange Service - backend API

Inter-facility blood unit exchange: offers, requests, allocation into
transfers, the transfer lifecycle and periodic reconciliation sweepers.
"""

import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from database import get_database_manager
from routes import admin, offers, requests, transfers, units
from services.audit import DatabaseAuditSink
from services.errors import ExchangeError
from services.notifier import LogNotifier, WebhookNotifier
from services.outbox import EventDispatcher
from services.sweepers import SweeperScheduler, SweeperSettings

PROJECT_ROOT = Path(__file__).parent


# ============================================================================
# Logging
# ============================================================================

def setup_logging(log_file: Optional[str] = None, debug: bool = False):
    """Configure root logging: stdout plus an optional file."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
        except OSError as e:
            print(f"Log file {log_file} not writable: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# ============================================================================
# Configuration
# ============================================================================

class Config:
    """Service configuration (environment, then config/exchange_config.json)"""
    VERSION = "1.0.0"

    DATABASE_PATH: str = os.getenv("EXCHANGE_DB_PATH", "blood_exchange.db")
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL") or None

    JWT_SECRET: str = os.getenv("EXCHANGE_JWT_SECRET", "change-me-exchange-secret")

    # ========== Sweeper thresholds ==========
    REQUEST_MAX_AGE_DAYS: int = int(os.getenv("EXCHANGE_REQUEST_MAX_AGE_DAYS", "7"))
    TRANSFER_CREATED_TIMEOUT_HOURS: int = int(os.getenv("EXCHANGE_TRANSFER_CREATED_TIMEOUT_HOURS", "48"))
    TRANSFER_IN_TRANSIT_TIMEOUT_DAYS: int = int(os.getenv("EXCHANGE_TRANSFER_IN_TRANSIT_TIMEOUT_DAYS", "7"))

    # ========== Sweeper intervals (seconds) ==========
    REQUEST_SWEEP_INTERVAL: int = int(os.getenv("EXCHANGE_REQUEST_SWEEP_INTERVAL", "86400"))
    INVENTORY_SWEEP_INTERVAL: int = int(os.getenv("EXCHANGE_INVENTORY_SWEEP_INTERVAL", "86400"))
    WATCHDOG_INTERVAL: int = int(os.getenv("EXCHANGE_WATCHDOG_INTERVAL", "10800"))
    SCHEDULER_ENABLED: bool = _env_bool("EXCHANGE_SCHEDULER_ENABLED", "true")

    # ========== Notifications / logging ==========
    NOTIFY_WEBHOOK_URL: Optional[str] = os.getenv("EXCHANGE_NOTIFY_WEBHOOK_URL") or None
    LOG_FILE: Optional[str] = os.getenv("EXCHANGE_LOG_FILE") or None
    DEBUG: bool = _env_bool("EXCHANGE_DEBUG", "false")

    @classmethod
    def sweeper_settings(cls) -> SweeperSettings:
        return SweeperSettings(
            request_max_age_days=cls.REQUEST_MAX_AGE_DAYS,
            transfer_created_timeout_hours=cls.TRANSFER_CREATED_TIMEOUT_HOURS,
            transfer_in_transit_timeout_days=cls.TRANSFER_IN_TRANSIT_TIMEOUT_DAYS,
            request_sweep_interval=cls.REQUEST_SWEEP_INTERVAL,
            inventory_sweep_interval=cls.INVENTORY_SWEEP_INTERVAL,
            watchdog_interval=cls.WATCHDOG_INTERVAL,
        )

    @classmethod
    def load_from_file(cls, config_path: str = "config/exchange_config.json"):
        """Override settings from a JSON file of {"SETTING_NAME": value}."""
        config_file = Path(config_path)
        if not config_file.is_absolute():
            config_file = PROJECT_ROOT / config_file
        if not config_file.exists():
            logger.info(f"Config file not found: {config_file}, using environment/defaults")
            return cls

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot load config file {config_file}: {e}, using environment/defaults")
            return cls

        for key, value in data.items():
            if key.isupper() and hasattr(cls, key):
                setattr(cls, key, value)
            else:
                logger.warning(f"Ignoring unknown config key: {key}")
        logger.info(f"Config loaded from {config_file}")
        return cls


logger = setup_logging(Config.LOG_FILE, Config.DEBUG)


# ============================================================================
# FastAPI application
# ============================================================================

def create_app(config=None) -> FastAPI:
    config = config or Config.load_from_file()

    app = FastAPI(
        title="Blood Exchange API",
        version=config.VERSION,
        description="Inter-facility blood unit offers, requests and transfers"
    )
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExchangeError)
    async def exchange_error_handler(request: Request, exc: ExchangeError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    for module in (units, offers, requests, transfers, admin):
        app.include_router(module.router)

    @app.on_event("startup")
    async def startup_event():
        store = get_database_manager(config.DATABASE_PATH, config.DATABASE_URL)

        notifier = WebhookNotifier(config.NOTIFY_WEBHOOK_URL) if config.NOTIFY_WEBHOOK_URL else LogNotifier()
        dispatcher = EventDispatcher(audit_sink=DatabaseAuditSink(store), notifier=notifier)
        dispatcher.start()
        store.set_dispatcher(dispatcher)

        scheduler = SweeperScheduler(store, config.sweeper_settings())
        app.state.store = store
        app.state.dispatcher = dispatcher
        app.state.scheduler = scheduler

        if config.SCHEDULER_ENABLED:
            await scheduler.start()
        else:
            logger.info("Sweeper scheduler disabled")
        logger.info(f"Blood Exchange v{config.VERSION} started ({store.dialect})")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.scheduler.stop()
        app.state.dispatcher.drain()
        app.state.dispatcher.stop()

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": config.VERSION,
            "database": app.state.store.dialect,
            "scheduler_running": app.state.scheduler.is_running,
            "timestamp": datetime.now().isoformat(),
        }

    return app


app = create_app()


# ============================================================================
# Entry point
# ============================================================================

if __name__ == "__main__":
    print("=" * 70)
    print(f"Blood Exchange Service v{Config.VERSION}")
    print("=" * 70)
    print(f"Database: {Config.DATABASE_URL and 'PostgreSQL' or Config.DATABASE_PATH}")
    print(f"Scheduler: {'enabled' if Config.SCHEDULER_ENABLED else 'disabled'}")
    print("API docs: http://localhost:8090/docs")
    print("=" * 70)

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8090,
        log_level="info",
        access_log=True
    )
