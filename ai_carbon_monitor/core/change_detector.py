"""
Change detection for collected usage rows.
"""

from decimal import Decimal
from typing import Optional

from ai_carbon_monitor.storage.models import UsageRecord

from .parser import UsageRow


def has_changed(row: UsageRow, existing: Optional[UsageRecord]) -> bool:
    """Decide whether a parsed row must be written.

    Only total_tokens and cost_usd are compared, so a row whose token
    sub-split changed but whose totals did not is not rewritten.

    Args:
        row: Freshly parsed row
        existing: Stored record for the same (date, model_name), if any

    Returns:
        True if the row is new or its totals differ from the stored record
    """
    if existing is None:
        return True
    if row.total_tokens != existing.total_tokens:
        return True
    return Decimal(str(row.cost_usd)) != Decimal(str(existing.cost_usd))
