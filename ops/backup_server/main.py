"""
Backup Server - Main entry point.

This module starts the backup server with all components:
- Artifact store connection (S3 or in-memory)
- Database preparation (change log tables and triggers)
- HTTP API (FastAPI on uvicorn)
- Backup scheduler loop (weekly full, hourly incremental)

Usage:
    backup-server
    python -m ops.backup_server.main

Configuration is entirely via environment variables.
See config.py and api/settings.py for all available settings.

Invariants:
    - The store is connected and the database prepared before the API accepts requests
    - Graceful shutdown ends progress streams, then waits for running jobs
    - One BackupService instance is shared by the API and the scheduler

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
import uvicorn

from .api import ApiSettings, create_app
from .config import ServerConfig
from .jobs import ProgressBroadcaster
from .scheduler import BackupScheduler
from .service import BackupService

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class Server:
    """Backup server orchestrator.

    Manages the lifecycle of all server components:
    - BackupService (store, database, engines, job tracker)
    - HTTP server
    - Scheduler loop

    Attributes:
        config: Server configuration
        api_settings: HTTP settings
        service: Backup service instance

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        api_settings: ApiSettings | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            api_settings: Optional HTTP settings (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self.api_settings = api_settings or ApiSettings()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.service: BackupService | None = None
        self.scheduler: BackupScheduler | None = None
        self.http_server: uvicorn.Server | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start the server and all components."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting backup server")
        self.config.log_config()
        self._running = True

        try:
            self.service = BackupService.from_config(
                self.config,
                broadcaster=ProgressBroadcaster(self.api_settings.subscriber_queue_size),
            )
            await self.service.start()
            logger.info("Backup service ready")

            app = create_app(self.service, self.api_settings)

            # Start scheduler if enabled
            if self.config.scheduler.enabled:
                self.scheduler = BackupScheduler(
                    self.service,
                    full_interval_seconds=self.config.scheduler.full_interval_seconds,
                    incremental_interval_seconds=self.config.scheduler.incremental_interval_seconds,
                    tick_seconds=self.config.scheduler.tick_seconds,
                )
                app.state.scheduler = self.scheduler
                self._tasks.append(asyncio.create_task(self.scheduler.start()))

            # Start HTTP server
            self.http_server = uvicorn.Server(
                uvicorn.Config(
                    app,
                    host=self.api_settings.host,
                    port=self.api_settings.port,
                    log_config=None,
                    timeout_graceful_shutdown=self.api_settings.graceful_shutdown_seconds,
                )
            )
            http_task = asyncio.create_task(self.http_server.serve())
            self._tasks.append(http_task)

            logger.info(
                "Backup server started successfully",
                extra={"host": self.api_settings.host, "port": self.api_settings.port},
            )

            # Wait for shutdown signal (or the HTTP server exiting on its own)
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())
            await asyncio.wait({shutdown_task, http_task}, return_when=asyncio.FIRST_COMPLETED)
            shutdown_task.cancel()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping backup server")

        if self.scheduler:
            await self.scheduler.stop()

        if self.http_server:
            self.http_server.should_exit = True

        # Let the HTTP server drain, then cancel whatever is left (the scheduler sleep)
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=self.api_settings.graceful_shutdown_seconds + 1)
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        if self.service:
            await self.service.shutdown()

        self._running = False
        logger.info("Backup server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        if self.service:
            # Open progress streams would hold the HTTP server's graceful shutdown
            self.service.broadcaster.close_all()
        if self.http_server:
            self.http_server.should_exit = True
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()


if __name__ == "__main__":
    main()
