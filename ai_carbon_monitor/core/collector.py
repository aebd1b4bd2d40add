"""
Scheduled usage collection.

Runs the reporting command on a fixed cadence, stores new or changed
usage records with their CO2 estimate, and notifies subscribers.

Collection cycles never overlap: a request arriving while a cycle is in
flight is dropped rather than queued, so collection latency stays bounded.
"""

import logging
import math
import threading
from datetime import datetime
from typing import List, Optional

from ai_carbon_monitor.notifications.hub import (
    EVENT_COLLECTION_ERROR,
    EVENT_USAGE_UPDATE,
    NotificationHub,
)
from ai_carbon_monitor.storage.models import UsageRecord
from ai_carbon_monitor.storage.repository import PersistenceError, UsageRepository

from .change_detector import has_changed
from .emissions import EmissionModel
from .parser import UsageRow, parse_table_output
from .runner import ProcessRunner

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 300.0
DEFAULT_SAMPLE_SIZE = 5


class DataCollector:
    """Single-slot scheduler for the collection pipeline."""

    def __init__(
        self,
        runner: ProcessRunner,
        emission_model: EmissionModel,
        repository: UsageRepository,
        hub: NotificationHub,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ):
        if not math.isfinite(interval_seconds) or interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if sample_size <= 0:
            raise ValueError("sample_size must be > 0")

        self.runner = runner
        self.emission_model = emission_model
        self.repository = repository
        self.hub = hub
        self.interval_seconds = interval_seconds
        self.sample_size = sample_size

        self._state_lock = threading.Lock()
        self._collecting = False
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None

    @property
    def is_collecting(self) -> bool:
        with self._state_lock:
            return self._collecting

    @property
    def is_scheduled(self) -> bool:
        return self._timer_thread is not None

    def start(self) -> None:
        """Initialize emissions, run a first cycle and schedule the rest.

        Raises:
            Exception: If the emission factor table cannot be loaded
        """
        self.emission_model.initialize()
        self.collect_data()

        if self._timer_thread is None:
            # One event per schedule; a stopped timer stays stopped
            self._stop_event = threading.Event()
            self._timer_thread = threading.Thread(
                target=self._timer_loop,
                args=(self._stop_event,),
                name="usage-collector",
                daemon=True,
            )
            self._timer_thread.start()
        logger.info("Data collector started - collecting every %.0f seconds", self.interval_seconds)

    def _timer_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_seconds):
            self.collect_data()

    def stop(self) -> None:
        """Stop scheduling cycles. A cycle already running is not aborted."""
        self._stop_event.set()
        thread = self._timer_thread
        self._timer_thread = None
        if thread is not None:
            logger.info("Data collector stopped")

    def trigger_collection(self) -> Optional[List[UsageRecord]]:
        """Run one cycle on demand through the same guarded entry point."""
        logger.info("Manual data collection triggered")
        return self.collect_data()

    def collect_data(self) -> Optional[List[UsageRecord]]:
        """Run one collection cycle unless another is in progress.

        Returns:
            Records written in this cycle, or None if the cycle was skipped
            or failed
        """
        with self._state_lock:
            if self._collecting:
                logger.debug("Data collection already in progress, skipping")
                return None
            self._collecting = True

        try:
            return self._run_cycle()
        except Exception as e:
            logger.exception("Data collection failed")
            self.hub.broadcast(EVENT_COLLECTION_ERROR, {
                "error": str(e) or type(e).__name__,
                "timestamp": datetime.now().isoformat(),
            })
            return None
        finally:
            with self._state_lock:
                self._collecting = False

    def _run_cycle(self) -> List[UsageRecord]:
        logger.info("Starting data collection cycle")
        rows = parse_table_output(self.runner.run())
        if not rows:
            logger.info("No new data from usage report")
            return []

        records = self._process_rows(rows)
        newest = sorted(records, key=lambda record: record.date, reverse=True)
        self.hub.broadcast(EVENT_USAGE_UPDATE, {
            "new_records": len(records),
            "latest_data": [record.to_dict() for record in newest[:self.sample_size]],
            "timestamp": datetime.now().isoformat(),
        })

        logger.info("Data collection complete - stored %d of %d rows", len(records), len(rows))
        return records

    def _process_rows(self, rows: List[UsageRow]) -> List[UsageRecord]:
        """Store rows that are new or changed, one at a time.

        Rows are handled serially so the read-then-write per key cannot race.
        """
        stored = []
        for row in rows:
            co2_grams = self.emission_model.grams_for_tokens(row.model_name, row.total_tokens)
            try:
                existing = self.repository.get_usage_record(row.date, row.model_name)
                if not has_changed(row, existing):
                    continue
                record = self.repository.upsert_usage_record(
                    UsageRecord.from_row(row, co2_grams)
                )
            except PersistenceError as e:
                logger.error("Failed to store usage row %s/%s: %s", row.date, row.model_name, e)
                continue

            stored.append(record)
            logger.debug(
                "Stored usage record %s/%s: %d tokens, $%s, %.4f g CO2",
                record.date, record.model_name, record.total_tokens,
                record.cost_usd, record.co2_grams
            )
        return stored

    def get_latest_usage_stats(self):
        """Usage summary for today, yesterday and the last 30 days."""
        return self.repository.get_usage_stats()
