import logging
from typing import Any, Optional

from cardsnipe.core import SnipeStatus
from cardsnipe.db import SnipeRepository
from cardsnipe.notifier import StatusNotifier

log = logging.getLogger("cardsnipe.lifecycle")


class SnipeLifecycle:
    """Conditional state changes that are published once they stick."""

    def __init__(self, repo: SnipeRepository, notifier: StatusNotifier, clock):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock

    def transition(
        self,
        snipe_id: str,
        from_status: SnipeStatus,
        to_status: SnipeStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        ok = self.repo.compare_and_transition(snipe_id, from_status, to_status, fields)
        if ok:
            log.debug("%s: %s -> %s", snipe_id, from_status.value, to_status.value)
            self.notifier.publish(snipe_id, from_status, to_status, self.clock.now())
        return ok

    def fail(self, snipe_id: str, from_status: SnipeStatus, message: str) -> bool:
        return self.transition(
            snipe_id, from_status, SnipeStatus.ERROR, {"error_message": message}
        )
