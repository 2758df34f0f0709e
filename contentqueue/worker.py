"""
Polling worker for the content job queue.

Claims one job at a time and runs it through generation and publishing.
On independent timers it also sweeps stale claims (purging expired
idempotency keys in the same pass) and evaluates failure-rate alerts.
Any number of workers can run against the same database.

Usage:
    contentqueue-worker            # run forever
    contentqueue-worker --once     # one sweep, one monitor pass, at most one job
"""

import argparse
import logging
import sys
import time
from typing import Optional

from sqlalchemy.orm import sessionmaker

from .clients.litellm_generator import LiteLLMGenerator
from .clients.notifiers import build_notifier
from .clients.wordpress_publisher import WordPressPublisher
from .core.config import ConfigurationError, Settings, get_settings
from .core.logging_config import setup_logging
from .database import (
    build_engine, build_session_factory, check_connection, init_db, mask_url, session_scope,
)
from .services.failure_monitor import FailureRateMonitor
from .services.idempotency_guard import IdempotencyGuard
from .services.processor import JobProcessor, ProcessResult
from .services.rate_limiter import RateLimiter
from .services.sweeper import Sweeper

logger = logging.getLogger("contentqueue.worker")


class Worker:
    """One worker process: claim loop plus sweeper and monitor timers."""

    def __init__(self, settings: Settings, factory: sessionmaker,
                 generator=None, publisher=None, notifier=None,
                 rate_limiter: Optional[RateLimiter] = None):
        self.settings = settings
        self.factory = factory
        self.generator = generator or LiteLLMGenerator.from_settings(settings)
        self.publisher = publisher or WordPressPublisher.from_settings(settings)
        self.notifier = notifier or build_notifier(settings)
        # Lives as long as the worker; counts are this process's only.
        self.rate_limiter = rate_limiter or RateLimiter.from_settings(settings)
        self._last_sweep = 0.0
        self._last_monitor = 0.0

    def seed(self) -> None:
        with session_scope(self.factory) as db:
            FailureRateMonitor(db, self.settings).ensure_default_rules()

    def sweep(self) -> None:
        """Reclaim stale claims and purge expired idempotency keys."""
        with session_scope(self.factory) as db:
            Sweeper(db, self.settings).sweep()
            guard = IdempotencyGuard(db, self.settings)
            guard.purge_expired()
            db.commit()
        self._last_sweep = time.monotonic()

    def evaluate_alerts(self) -> None:
        with session_scope(self.factory) as db:
            FailureRateMonitor(db, self.settings, notifier=self.notifier).evaluate()
        self._last_monitor = time.monotonic()

    def process_one(self) -> Optional[ProcessResult]:
        with session_scope(self.factory) as db:
            processor = JobProcessor(db, self.generator, self.publisher, settings=self.settings,
                                     rate_limiter=self.rate_limiter)
            result = processor.run_once()
        if result is not None:
            logger.info(f"Job {result.job_id} finished: {result.outcome}")
        return result

    def tick(self) -> Optional[ProcessResult]:
        """Run whichever timers are due, then process at most one job."""
        now = time.monotonic()
        if now - self._last_sweep >= self.settings.sweep_interval_seconds:
            self.sweep()
        if now - self._last_monitor >= self.settings.monitor_interval_seconds:
            self.evaluate_alerts()
        return self.process_one()

    def run_once(self) -> Optional[ProcessResult]:
        self.sweep()
        self.evaluate_alerts()
        return self.process_one()

    def run_forever(self) -> None:
        logger.info(f"Worker started, polling every {self.settings.poll_interval_seconds}s")
        while True:
            try:
                result = self.tick()
                if result is None:
                    time.sleep(self.settings.poll_interval_seconds)
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                time.sleep(self.settings.poll_interval_seconds)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Content job queue worker")
    parser.add_argument("--once", action="store_true",
                        help="Run one sweep and monitor pass and process at most one job")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    try:
        settings.validate_production_config()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    engine = build_engine(settings.database_url, settings)
    try:
        check_connection(engine)
    except Exception as e:
        logger.error(f"Database unreachable at {mask_url(settings.database_url)}: {e}")
        return 1
    init_db(engine)

    try:
        worker = Worker(settings, build_session_factory(engine))
    except ValueError as e:
        logger.error(f"Worker is not configured: {e}")
        return 1
    worker.seed()

    if args.once:
        result = worker.run_once()
        logger.info("Processed one job" if result else "No job to process")
        return 0

    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
