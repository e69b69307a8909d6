"""
Progress rules: completion and regression protection
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

COMPLETION_THRESHOLD = 95.0

DEFAULT_REREAD_CONFIG = {
    "reread_threshold": 30,
    "high_progress_threshold": 85,
    "regression_block_threshold": 50,
    "regression_warn_threshold": 15,
}


@dataclass
class RegressionCheck:
    """Outcome of comparing new progress against the last synced value."""

    is_regression: bool = False
    amount: float = 0.0
    should_block: bool = False
    should_warn: bool = False
    is_potential_reread: bool = False
    reason: str = "No regression detected"


def is_complete(progress_percent: Optional[float], is_finished: bool = False) -> bool:
    """A book is complete when Audiobookshelf says so or progress reaches 95%"""
    if is_finished:
        return True
    return progress_percent is not None and progress_percent >= COMPLETION_THRESHOLD


def analyze_regression(
    old_progress: Optional[float],
    new_progress: Optional[float],
    reread_config: Optional[Dict[str, Any]] = None,
) -> RegressionCheck:
    """
    Classify a progress change

    A drop from at least ``high_progress_threshold`` to at most
    ``reread_threshold`` is a re-read and is allowed. Any other drop of
    ``regression_block_threshold`` or more is blocked, and drops of
    ``regression_warn_threshold`` or more are allowed with a warning.
    """
    settings = dict(DEFAULT_REREAD_CONFIG)
    settings.update(reread_config or {})

    if old_progress is None or new_progress is None:
        return RegressionCheck(reason="No previous progress to compare")

    amount = round(old_progress - new_progress, 6)
    if amount <= 0:
        return RegressionCheck()

    check = RegressionCheck(is_regression=True, amount=amount)
    if old_progress >= settings["high_progress_threshold"] and new_progress <= settings["reread_threshold"]:
        check.is_potential_reread = True
        check.should_warn = True
        check.reason = f"Potential re-read: {old_progress:.1f}% → {new_progress:.1f}%"
    elif amount >= settings["regression_block_threshold"]:
        check.should_block = True
        check.reason = f"Major regression: {old_progress:.1f}% → {new_progress:.1f}% ({amount:.1f}% drop)"
    elif amount >= settings["regression_warn_threshold"]:
        check.should_warn = True
        check.reason = f"Progress regression: {old_progress:.1f}% → {new_progress:.1f}% ({amount:.1f}% drop)"
    else:
        check.reason = f"Minor regression: {amount:.1f}% drop"
    return check
