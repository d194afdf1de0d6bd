"""Refresh run orchestrator.

One run: authenticate -> acquire run lock -> fetch snapshot -> reconcile
tickers in batches -> recompute every tag family -> commit -> record one
UpdateStat row.

Reconciling and tagging share one transaction in every mode. Individual
ticker and tag writes sit in savepoints, so a single bad row is rolled back
and reported without losing the rest of the run.
"""

import hmac
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_incrementing,
)

from tag_explorer.config import settings
from tag_explorer.db import Database
from tag_explorer.exceptions import (
    PersistenceError, Unauthorized, UpstreamRateLimited, UpstreamTransient,
)
from tag_explorer.models.stock import Stock
from tag_explorer.services.fundamentals import Metrics, request_metrics
from tag_explorer.services.health import compute_health
from tag_explorer.services.reconciler import reconcile
from tag_explorer.services.run_lock import RunLockHandle
from tag_explorer.services.snapshot import Bar, fetch_market_snapshot
from tag_explorer.services.stats import record_update_stat
from tag_explorer.services.tag_applier import apply_family
from tag_explorer.services.tag_rules import compute_all_families, is_dynamic, load_tag_universe

logger = logging.getLogger(__name__)

MODES = ("standard", "batch", "tags-only")


@dataclass(frozen=True)
class RunMode:
    name: str
    batch_size: int
    batch_delay: float
    max_attempts: int
    fetch: bool = True


def get_mode(name: str) -> RunMode:
    if name == "standard":
        return RunMode(
            name, settings.standard_batch_size, settings.standard_batch_delay_seconds,
            settings.standard_max_attempts,
        )
    if name == "batch":
        return RunMode(
            name, settings.batch_batch_size, settings.batch_batch_delay_seconds,
            settings.batch_max_attempts,
        )
    if name in ("tags-only", "tags"):
        return RunMode("tags-only", 0, 0.0, 0, fetch=False)
    raise ValueError(f"Unknown run mode {name!r}. Use one of: {', '.join(MODES)}")


def authenticate(authorization: str | None, secret: str = None):
    """Check an ``Authorization: Bearer <secret>`` header value."""
    secret = secret if secret is not None else settings.cron_secret
    if not secret:
        logger.error("TAGX_CRON_SECRET is not configured; rejecting write request")
        raise Unauthorized("Write endpoints are disabled: no shared secret configured")
    if not authorization:
        raise Unauthorized("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        raise Unauthorized("Invalid API key")


@dataclass
class RunResult:
    mode: str
    triggered_by: str = "manual"
    trigger_reason: str = None
    total_stocks: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    snapshot_size: int = 0
    errors: list[dict] = field(default_factory=list)
    tag_counts: dict[str, int] = field(default_factory=dict)
    health_score_before: int = None
    health_score_after: int = None
    duration_seconds: float = 0.0
    succeeded: bool = False
    failure: str = None
    max_errors: int = 10

    def add_error(self, entry: dict):
        self.error_count += 1
        if len(self.errors) < self.max_errors:
            self.errors.append(entry)

    def fail(self, exc: Exception):
        self.succeeded = False
        self.failure = str(exc) or exc.__class__.__name__
        # Everything written inside the run transaction was rolled back
        self.success_count = 0
        self.error_count = max(self.total_stocks, 1)

    @property
    def success_rate(self) -> int:
        if not self.total_stocks:
            return 0
        return round(self.success_count / self.total_stocks * 100)

    def summary(self) -> dict:
        return {
            "total_stocks": self.total_stocks,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
            "duration_seconds": self.duration_seconds,
            "health_score_before": self.health_score_before,
            "health_score_after": self.health_score_after,
        }

    def to_response(self) -> dict:
        body = {
            "success": self.succeeded,
            "mode": self.mode,
            "summary": self.summary(),
            "errors": self.errors,
            "tags": self.tag_counts,
            "timestamp": datetime.utcnow().isoformat(),
        }
        if self.succeeded:
            body["message"] = f"{self.mode} update completed"
        else:
            body["error"] = f"{self.mode} update failed"
            body["details"] = self.failure
        return body

    def stat_values(self) -> dict:
        details = {
            "errors": self.errors,
            "skipped": self.skipped_count,
            "snapshot_tickers": self.snapshot_size,
            "tags_applied": len(self.tag_counts),
        }
        if self.failure:
            details["failure"] = self.failure
        return {
            "update_type": self.mode,
            "total_stocks": self.total_stocks,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "duration_seconds": self.duration_seconds,
            "triggered_by": self.triggered_by,
            "trigger_reason": self.trigger_reason,
            "health_score_before": self.health_score_before,
            "health_score_after": self.health_score_after,
            "details": details,
        }


class RefreshRun:
    """One refresh invocation. Use ``run_refresh`` for the locked, authenticated entry point."""

    def __init__(
        self,
        db: Database,
        mode: str = "standard",
        triggered_by: str = "manual",
        trigger_reason: str = None,
        snapshot_fetcher: Callable[[], dict[str, Bar]] = None,
        fundamentals_fetcher: Callable[[str], Metrics | None] = None,
        sleep: Callable[[float], None] = None,
        heartbeat: Callable[[], None] = None,
    ):
        self.db = db
        self.mode = get_mode(mode)
        self.snapshot_fetcher = snapshot_fetcher or fetch_market_snapshot
        if fundamentals_fetcher is None and settings.finnhub_api_key:
            fundamentals_fetcher = request_metrics
        self.fundamentals_fetcher = fundamentals_fetcher
        self.sleep = sleep or time.sleep
        self.heartbeat = heartbeat or (lambda: None)
        self.result = RunResult(
            mode=self.mode.name,
            triggered_by=triggered_by,
            trigger_reason=trigger_reason,
            max_errors=settings.max_reported_errors,
        )

    def run(self) -> RunResult:
        result = self.result
        logger.info(f"===== Starting {self.mode.name} refresh ({result.triggered_by}) =====")
        result.health_score_before = self._health_score()
        started = time.monotonic()

        try:
            if self.mode.fetch:
                result.total_stocks = self._count_universe()
                snapshot = self.snapshot_fetcher()
                result.snapshot_size = len(snapshot)
                with self.db.transaction() as session:
                    self._reconcile_all(session, snapshot)
                    self._apply_tags(session)
            else:
                with self.db.transaction() as session:
                    self._apply_tags(session)
            result.succeeded = True
        except Exception as e:
            logger.error(f"{self.mode.name} refresh FAILED: {e}", exc_info=True)
            result.fail(e)
        finally:
            result.duration_seconds = round(time.monotonic() - started, 2)
            result.health_score_after = self._health_score()
            self._record(result)

        logger.info(
            f"===== {self.mode.name} refresh {'completed' if result.succeeded else 'failed'}: "
            f"{result.success_count}/{result.total_stocks} ok, {result.error_count} errors, "
            f"{result.duration_seconds}s ====="
        )
        return result

    # -- phases ---------------------------------------------------------

    def _count_universe(self) -> int:
        with self.db.reader() as session:
            return len(session.scalars(select(Stock.ticker)).all())

    def _reconcile_all(self, session, snapshot: dict[str, Bar]):
        tickers = list(session.scalars(select(Stock.ticker).order_by(Stock.ticker)).all())
        self.result.total_stocks = len(tickers)
        size = self.mode.batch_size
        total_batches = (len(tickers) + size - 1) // size
        if self.fundamentals_fetcher is None:
            logger.warning("Finnhub API key not configured; updating market data only")

        for i in range(0, len(tickers), size):
            batch = tickers[i:i + size]
            logger.info(f"Batch {i // size + 1}/{total_batches}: {len(batch)} tickers")
            self._process_batch(session, batch, snapshot)
            self.heartbeat()
            if i + size < len(tickers):
                self.sleep(self.mode.batch_delay)

    def _process_batch(self, session, batch: list[str], snapshot: dict[str, Bar]):
        if self.fundamentals_fetcher is None:
            for ticker in batch:
                self._write(session, ticker, snapshot.get(ticker), None)
            return

        with ThreadPoolExecutor(max_workers=len(batch)) as pool:
            futures = {}
            for n, ticker in enumerate(batch):
                if n:
                    self.sleep(settings.fundamentals_delay_seconds)
                futures[pool.submit(self._fetch_with_retry, ticker)] = ticker

            # Writes stay on this thread; the session is not shared with workers
            for future in as_completed(futures):
                ticker = futures[future]
                try:
                    metrics = future.result()
                except UpstreamTransient as e:
                    logger.error(f"{ticker}: giving up on fundamentals after {self.mode.max_attempts} attempts: {e}")
                    self.result.add_error({"ticker": ticker, "error": str(e), "retries": self.mode.max_attempts})
                    # Market data still applies; previous fundamentals are kept
                    self._write(session, ticker, snapshot.get(ticker), None, counted=False)
                    continue
                self._write(session, ticker, snapshot.get(ticker), metrics)

    def _fetch_with_retry(self, ticker: str) -> Metrics | None:
        retrying = Retrying(
            stop=stop_after_attempt(max(self.mode.max_attempts, 1)),
            wait=wait_incrementing(start=settings.retry_backoff_seconds, increment=settings.retry_backoff_seconds),
            retry=retry_if_exception_type(UpstreamTransient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=True,
        )
        try:
            return retrying(self.fundamentals_fetcher, ticker)
        except UpstreamRateLimited:
            logger.warning(f"Rate limit hit for {ticker}, keeping previous fundamentals")
            return None

    def _write(self, session, ticker: str, bar: Bar | None, metrics: Metrics | None, counted: bool = True):
        try:
            updated = reconcile(session, ticker, bar, metrics)
        except PersistenceError as e:
            logger.error(str(e))
            self.result.add_error(e.to_dict())
            return
        if not counted:
            return
        if updated:
            self.result.success_count += 1
        else:
            self.result.skipped_count += 1

    def _apply_tags(self, session):
        df = load_tag_universe(session)
        logger.info(f"Recomputing tags for {len(df)} stocks")
        tagged = set()
        for family, tag_map in compute_all_families(df):
            applied, errors = apply_family(session, family, tag_map, replace=is_dynamic(family))
            self.result.tag_counts.update(applied)
            for entry in errors:
                self.result.add_error(entry)
            for tickers in tag_map.values():
                tagged.update(tickers)

        if not self.mode.fetch:
            self.result.total_stocks = len(df)
            self.result.success_count = len(tagged & set(df.index))

    # -- bookkeeping ----------------------------------------------------

    def _health_score(self) -> int | None:
        try:
            with self.db.reader() as session:
                return compute_health(session).score
        except SQLAlchemyError as e:
            logger.warning(f"Could not compute health score: {e}")
            return None

    def _record(self, result: RunResult):
        try:
            with self.db.transaction() as session:
                record_update_stat(session, **result.stat_values())
        except SQLAlchemyError as e:
            logger.error(f"Failed to save update stats: {e}")


def run_refresh(
    db: Database,
    mode: str = "standard",
    triggered_by: str = "manual",
    trigger_reason: str = None,
    authorization: str = None,
    trusted: bool = False,
    **kwargs,
) -> RunResult:
    """Authenticate, take the run lock and execute one refresh run.

    ``trusted`` skips the bearer check for in-process callers (CLI, scheduler).
    Raises ``Unauthorized`` or ``RunInProgress`` before any work is done;
    every other failure is captured in the returned ``RunResult``.
    """
    if not trusted:
        authenticate(authorization)
    with RunLockHandle(db) as lock:
        return RefreshRun(
            db, mode, triggered_by=triggered_by, trigger_reason=trigger_reason,
            heartbeat=lock.heartbeat, **kwargs,
        ).run()


def run_if_unhealthy(db: Database, threshold: int = None, **kwargs) -> RunResult | None:
    """Escalate to a batch run when the health score is below ``threshold``."""
    if threshold is None:
        threshold = settings.batch_trigger_threshold
    with db.reader() as session:
        report = compute_health(session)
    if report.score >= threshold:
        logger.info(f"Health score {report.score} >= {threshold}, no batch update needed")
        return None
    logger.warning(f"Health score {report.score} below threshold {threshold}, starting batch update")
    return run_refresh(
        db,
        "batch",
        triggered_by="health-check",
        trigger_reason=f"Health score below threshold ({report.score})",
        trusted=True,
        **kwargs,
    )
