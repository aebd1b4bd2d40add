"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

import dataclasses
import logging
import sqlite3
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import EmissionFactor, UsageRecord

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a usage record cannot be read from or written to the store."""


# Factors seeded on first initialization. Existing rows are never overwritten.
DEFAULT_EMISSION_FACTORS = [
    EmissionFactor(
        pattern="claude-opus*",
        grams_per_1k_tokens=Decimal("4.2"),
        effective_from="2024-01-01",
        description="Large Claude models",
        source="Research estimate",
    ),
    EmissionFactor(
        pattern="claude-sonnet*",
        grams_per_1k_tokens=Decimal("2.1"),
        effective_from="2024-01-01",
        description="Medium Claude models",
        source="Research estimate",
    ),
    EmissionFactor(
        pattern="claude-haiku*",
        grams_per_1k_tokens=Decimal("0.8"),
        effective_from="2024-01-01",
        description="Small Claude models",
        source="Research estimate",
    ),
    EmissionFactor(
        pattern="*",
        grams_per_1k_tokens=Decimal("3.0"),
        effective_from="2024-01-01",
        description="Default factor for unknown models",
        source="Research estimate",
    ),
]

_USAGE_COLUMNS = """
    date, model_name, input_tokens, output_tokens, cache_create_tokens,
    cache_read_tokens, total_tokens, cost_usd, co2_emissions_grams, updated_at
"""


def _record_from_row(row: sqlite3.Row) -> UsageRecord:
    updated_at = row["updated_at"]
    return UsageRecord(
        date=row["date"],
        model_name=row["model_name"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cache_create_tokens=row["cache_create_tokens"],
        cache_read_tokens=row["cache_read_tokens"],
        total_tokens=row["total_tokens"],
        cost_usd=Decimal(str(row["cost_usd"])),
        co2_grams=row["co2_emissions_grams"],
        updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
    )


def _factor_from_row(row: sqlite3.Row) -> EmissionFactor:
    return EmissionFactor(
        pattern=row["model_pattern"],
        grams_per_1k_tokens=Decimal(str(row["emissions_per_1k_tokens"])),
        effective_from=row["effective_from"],
        description=row["description"],
        source=row["source"],
    )


class UsageRepository:
    """Repository for usage records and emission factors.

    Every call opens its own short-lived connection, so a repository can be
    shared between the collector thread and the CLI without extra locking.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create tables if missing and seed the default emission factors."""
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS usage_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL,
                    model_name TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    cache_create_tokens INTEGER NOT NULL DEFAULT 0,
                    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
                    total_tokens INTEGER NOT NULL,
                    cost_usd REAL NOT NULL,
                    co2_emissions_grams REAL NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT,
                    UNIQUE (date, model_name)
                );

                CREATE INDEX IF NOT EXISTS idx_usage_records_date
                    ON usage_records (date);

                CREATE TABLE IF NOT EXISTS emission_factors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    model_pattern TEXT NOT NULL UNIQUE,
                    emissions_per_1k_tokens REAL NOT NULL
                        CHECK (emissions_per_1k_tokens > 0),
                    description TEXT,
                    source TEXT,
                    effective_from TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
            """)
            for factor in DEFAULT_EMISSION_FACTORS:
                conn.execute("""
                    INSERT OR IGNORE INTO emission_factors
                    (model_pattern, emissions_per_1k_tokens, description,
                     source, effective_from)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    factor.pattern,
                    float(factor.grams_per_1k_tokens),
                    factor.description,
                    factor.source,
                    factor.effective_from
                ))
            conn.commit()
        finally:
            conn.close()
        logger.info("Database schema ready at %s", self.db_path)

    def get_usage_record(self, date: str, model_name: str) -> Optional[UsageRecord]:
        """Fetch the stored record for a (date, model_name) key.

        Raises:
            PersistenceError: If the store cannot be read
        """
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    f"SELECT {_USAGE_COLUMNS} FROM usage_records "
                    "WHERE date = ? AND model_name = ?",
                    (date, model_name)
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to read usage record {date}/{model_name}: {e}"
            ) from e
        return _record_from_row(row) if row else None

    def upsert_usage_record(self, record: UsageRecord) -> UsageRecord:
        """Insert or replace the record for its (date, model_name) key.

        Returns:
            The stored record with a refreshed updated_at

        Raises:
            PersistenceError: If the write fails
        """
        stored = dataclasses.replace(record, updated_at=datetime.now())
        try:
            conn = get_connection(self.db_path)
            try:
                conn.execute(f"""
                    INSERT OR REPLACE INTO usage_records ({_USAGE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    stored.date,
                    stored.model_name,
                    stored.input_tokens,
                    stored.output_tokens,
                    stored.cache_create_tokens,
                    stored.cache_read_tokens,
                    stored.total_tokens,
                    float(stored.cost_usd),
                    stored.co2_grams,
                    stored.updated_at.isoformat()
                ))
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to write usage record {record.date}/{record.model_name}: {e}"
            ) from e
        return stored

    def fetch_usage_records(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        model: Optional[str] = None,
        limit: int = 1000
    ) -> List[UsageRecord]:
        """Fetch stored records with optional filtering.

        Args:
            start_date: Inclusive lower bound (YYYY-MM-DD)
            end_date: Inclusive upper bound (YYYY-MM-DD)
            model: Optional filter for a specific model name
            limit: Maximum number of records to return

        Returns:
            List of records ordered by date (newest first), then model name
        """
        query = f"SELECT {_USAGE_COLUMNS} FROM usage_records"
        params = []
        conditions = []

        if start_date:
            conditions.append("date >= ?")
            params.append(start_date)
        if end_date:
            conditions.append("date <= ?")
            params.append(end_date)
        if model:
            conditions.append("model_name = ?")
            params.append(model)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY date DESC, model_name LIMIT ?"
        params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_record_from_row(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def load_emission_factors(self) -> List[EmissionFactor]:
        """Load all factors, most recently effective first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT model_pattern, emissions_per_1k_tokens, description,
                       source, effective_from
                FROM emission_factors
                ORDER BY effective_from DESC, id
            """)
            return [_factor_from_row(row) for row in cursor]
        finally:
            conn.close()

    def list_emission_factors(self) -> List[EmissionFactor]:
        """List all factors ordered by pattern, for reporting."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT model_pattern, emissions_per_1k_tokens, description,
                       source, effective_from
                FROM emission_factors
                ORDER BY model_pattern
            """)
            return [_factor_from_row(row) for row in cursor]
        finally:
            conn.close()

    def upsert_emission_factor(self, factor: EmissionFactor) -> None:
        """Insert or replace the factor keyed by its pattern."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO emission_factors
                (model_pattern, emissions_per_1k_tokens, description,
                 source, effective_from)
                VALUES (?, ?, ?, ?, ?)
            """, (
                factor.pattern,
                float(factor.grams_per_1k_tokens),
                factor.description,
                factor.source,
                factor.effective_from
            ))
            conn.commit()
        finally:
            conn.close()

    def get_usage_stats(self, today: Optional[date] = None) -> Dict[str, Dict[str, float]]:
        """Summarize usage for today, yesterday and the last 30 days.

        The yearly projection extrapolates the 30-day window: tokens from the
        average active day, cost and CO2 from the 30-day daily mean.

        Args:
            today: Reference day, defaults to the current local date

        Returns:
            Dictionary with 'today', 'yesterday', 'last_30_days' and
            'yearly_projection' sections
        """
        today = today or date.today()
        yesterday = today - timedelta(days=1)
        window_start = today - timedelta(days=30)

        conn = get_connection(self.db_path)
        try:
            day_query = """
                SELECT
                    COALESCE(SUM(total_tokens), 0) AS tokens,
                    COALESCE(SUM(cost_usd), 0) AS cost,
                    COALESCE(SUM(co2_emissions_grams), 0) AS co2
                FROM usage_records
                WHERE date = ?
            """
            today_row = conn.execute(day_query, (today.isoformat(),)).fetchone()
            yesterday_row = conn.execute(day_query, (yesterday.isoformat(),)).fetchone()

            daily_rows = conn.execute("""
                SELECT date,
                       SUM(total_tokens) AS tokens,
                       SUM(cost_usd) AS cost,
                       SUM(co2_emissions_grams) AS co2
                FROM usage_records
                WHERE date >= ?
                GROUP BY date
            """, (window_start.isoformat(),)).fetchall()
        finally:
            conn.close()

        total_tokens = sum(row["tokens"] for row in daily_rows)
        total_cost = sum(row["cost"] for row in daily_rows)
        total_co2 = sum(row["co2"] for row in daily_rows)
        avg_tokens = total_tokens / len(daily_rows) if daily_rows else 0

        return {
            "today": {
                "tokens": today_row["tokens"],
                "cost": float(today_row["cost"]),
                "co2": float(today_row["co2"]),
            },
            "yesterday": {
                "tokens": yesterday_row["tokens"],
                "cost": float(yesterday_row["cost"]),
                "co2": float(yesterday_row["co2"]),
            },
            "last_30_days": {
                "total_tokens": total_tokens,
                "avg_tokens": float(avg_tokens),
                "total_cost": float(total_cost),
                "total_co2": float(total_co2),
            },
            "yearly_projection": {
                "tokens": float(avg_tokens * 365),
                "cost": float(total_cost / 30 * 365),
                "co2": float(total_co2 / 30 * 365),
            },
        }
