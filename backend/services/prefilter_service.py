"""Cheap hard-constraint screen run before full scoring."""

from __future__ import annotations

from datetime import date
from typing import Optional

from backend.domain.constraints import (
    ScoringConfig,
    iter_hard_constraint_failures,
    scoring_config_from_settings,
)
from backend.domain.models import Listing, Opportunity, PrefilterDecision
from backend.utils.config import Settings, get_settings


_PASS = PrefilterDecision(passed=True)


class EligibilityPrefilter:
    """Rejects pairs that cannot qualify without computing any factor."""

    def __init__(
        self,
        config: Optional[ScoringConfig] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._config = config or scoring_config_from_settings(settings or get_settings())

    def evaluate(
        self,
        listing: Listing,
        opportunity: Opportunity,
        as_of: Optional[date] = None,
    ) -> PrefilterDecision:
        """Return the first failing hard constraint, or a pass."""
        reason = next(
            iter_hard_constraint_failures(
                listing,
                opportunity,
                as_of or date.today(),
                self._config,
            ),
            None,
        )
        if reason is None:
            return _PASS
        return PrefilterDecision(passed=False, reason=reason)
