"""Condition store sync into the trigger engine."""

from __future__ import annotations

import logging
from datetime import datetime

from murmr_core.engine import TriggerEngine
from murmr_core.errors import StoreSyncFailure
from murmr_core.models import utc_now
from murmr_core.reporting import ErrorReporter
from murmr_core.store.notes import ConditionStore

logger = logging.getLogger(__name__)


class ConditionSync:
    """Pull the active conditions for one user and push them into the engine.

    A failed pull leaves the engine on its previous snapshot.
    """

    def __init__(
        self,
        store: ConditionStore,
        engine: TriggerEngine,
        user_id: str,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.user_id = user_id
        self.reporter = reporter
        self.last_success_at: datetime | None = None
        self.last_error: str | None = None
        self.consecutive_failures = 0

    def sync(self) -> bool:
        try:
            conditions = self.store.list_active_conditions(self.user_id)
        except StoreSyncFailure as exc:
            self._failed(exc)
            return False
        except Exception as exc:  # noqa: BLE001
            self._failed(StoreSyncFailure(str(exc)))
            return False
        self.engine.on_condition_set_changed(conditions)
        self.last_success_at = utc_now()
        self.last_error = None
        self.consecutive_failures = 0
        logger.debug("sync: pushed %s conditions", len(conditions))
        return True

    def attach(self) -> None:
        """Resync whenever the store reports a change."""
        self.store.subscribe(self.sync)

    def _failed(self, exc: StoreSyncFailure) -> None:
        self.consecutive_failures += 1
        self.last_error = exc.message
        logger.warning("sync: keeping previous snapshot; store unavailable: %s", exc.message)
        if self.reporter is not None:
            self.reporter.report(exc, user_id=self.user_id, consecutive_failures=self.consecutive_failures)
