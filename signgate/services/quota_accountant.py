"""
signgate/services/quota_accountant.py

Post-request quota accounting, decoupled from the decision path.

Design Decisions:
- `record()` returns immediately. The increments and the outcome
  append run on the background dispatcher after the response is
  already on its way, so a slow or dead store costs the caller
  nothing.
- Each step is isolated: a failed daily increment does not stop the
  hourly/burst increments or the outcome append.
- At-least-once. A retried internal write may double-count one unit
  of quota; there is no idempotency key.
- Counted regardless of downstream outcome ("request attempted").
  Requests the limiter denied are logged but consume nothing.
"""

from __future__ import annotations

from typing import Mapping

from signgate.services.background import BackgroundDispatcher
from signgate.services.identity import Identity
from signgate.services.quota_store import OutcomeRecord, QuotaStore
from signgate.services.quota_windows import (
    DEFAULT_TIER_LIMITS,
    EVALUATION_ORDER,
    Tier,
    TierLimits,
    usage_window,
)
from signgate.utils.exceptions import StoreUnavailableError
from signgate.utils.logger import get_logger
from signgate.utils.metrics import accounting_failures_total

logger = get_logger(__name__)


class QuotaAccountant:
    """
    Increments usage counters and appends outcome records.

    Usage:
        accountant.record(identity, outcome)          # fire-and-forget
        await accountant.account(identity, outcome)   # same work, awaited
    """

    def __init__(
        self,
        store: QuotaStore,
        dispatcher: BackgroundDispatcher,
        tier_limits: Mapping[Tier, TierLimits] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._tier_limits = dict(tier_limits or DEFAULT_TIER_LIMITS)

    def record(self, identity: Identity, outcome: OutcomeRecord, consume_quota: bool = True) -> None:
        """Schedule accounting for a finished request; never raises."""
        self._dispatcher.dispatch(
            "quota_accounting",
            self.account(identity, outcome, consume_quota=consume_quota),
        )

    async def account(self, identity: Identity, outcome: OutcomeRecord, consume_quota: bool = True) -> None:
        """Run every accounting step, logging (not raising) each failure."""
        if consume_quota:
            limits = self._tier_limits[identity.tier]
            for window in EVALUATION_ORDER:
                period = usage_window(window, outcome.timestamp, limits)
                await self._step(
                    f"increment_{window.value}",
                    self._store.increment(identity.scope, period, 1),
                    scope=identity.scope,
                )

        await self._step(
            "append_outcome",
            self._store.append_outcome(outcome),
            scope=identity.scope,
        )

    async def _step(self, step: str, awaitable, scope: str) -> None:  # type: ignore[no-untyped-def]
        try:
            await awaitable
        except StoreUnavailableError as exc:
            accounting_failures_total.labels(step=step).inc()
            logger.warning(f"Accounting step {step} dropped: {exc.message}", scope=scope)
        except Exception as exc:
            accounting_failures_total.labels(step=step).inc()
            logger.error(f"Accounting step {step} failed unexpectedly: {exc!r}", scope=scope)
