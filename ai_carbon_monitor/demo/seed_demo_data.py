# ai_carbon_monitor/demo/seed_demo_data.py

from typing import List

from ai_carbon_monitor.core.collector import DataCollector
from ai_carbon_monitor.core.emissions import EmissionModel
from ai_carbon_monitor.notifications.hub import NotificationHub
from ai_carbon_monitor.storage.models import UsageRecord
from ai_carbon_monitor.storage.repository import UsageRepository

# Captured claude-monitor daily view, including colour codes and truncated cells
SAMPLE_OUTPUT = (
    "\x1b[1mClaude Code Token Usage Report - Daily\x1b[0m\n"
    "┏━━━━━━━━━━━━┳━━━━━━━━━━━━━━━━┳━━━━━━━━━┳━━━━━━━━┳━━━━━━━━━┳━━━━━━━━━━━┳━━━━━━━━━┳━━━━━━━━┓\n"
    "┃ Date       ┃ Models         ┃   Input ┃ Output ┃  Cache… ┃ Cache Re… ┃ Total … ┃ Cost … ┃\n"
    "┡━━━━━━━━━━━━╇━━━━━━━━━━━━━━━━╇━━━━━━━━━╇━━━━━━━━╇━━━━━━━━━╇━━━━━━━━━━━╇━━━━━━━━━╇━━━━━━━━┩\n"
    "│ \x1b[36m2025-08-29\x1b[0m │ claude-sonnet… │   1,234 │    567 │       0 │         0 │   1,801 │  $3.10 │\n"
    "├────────────┼────────────────┼─────────┼────────┼─────────┼───────────┼─────────┼────────┤\n"
    "│ 2025-08-28 │ claude-opus…   │  10,250 │  2,040 │  15,000 │   120,500 │ 147,790 │ $12.45 │\n"
    "├────────────┼────────────────┼─────────┼────────┼─────────┼───────────┼─────────┼────────┤\n"
    "│ 2025-08-27 │ claude-haiku…  │     900 │    300 │       0 │     1,200 │   2,400 │  $0.05 │\n"
    "├────────────┼────────────────┼─────────┼────────┼─────────┼───────────┼─────────┼────────┤\n"
    "│ Total      │                │  12,384 │  2,907 │  15,000 │   121,700 │ 151,991 │ $15.60 │\n"
    "└────────────┴────────────────┴─────────┴────────┴─────────┴───────────┴─────────┴────────┘\n"
)


class _SampleRunner:
    """Runner returning the captured report instead of running the tool."""

    def run(self) -> str:
        return SAMPLE_OUTPUT


def seed_demo_data(db_path: str = "./data/usage.db") -> List[UsageRecord]:
    """Store the sample report's rows through a regular collection cycle."""
    repository = UsageRepository(db_path)
    repository.initialize_schema()
    collector = DataCollector(
        runner=_SampleRunner(),
        emission_model=EmissionModel(repository),
        repository=repository,
        hub=NotificationHub(),
    )
    collector.emission_model.initialize()

    records = collector.collect_data()
    if records is None:
        raise RuntimeError("Demo collection failed, see log output for details")
    return records


if __name__ == "__main__":
    records = seed_demo_data()
    print(f"Demo usage data inserted ({len(records)} records)")
