from __future__ import annotations

import logging

from .errors import ProbeError
from .state import HostState
from .types import Action, ProbeStatus

logger = logging.getLogger(__name__)


class StateProber:
    """Asks each action whether its target state already holds.

    A probe that cannot query the host is reported as ``absent``: the action
    is then applied and left to reconcile from whatever it finds.
    """

    def probe(self, action: Action, state: HostState) -> ProbeStatus:
        try:
            status = ProbeStatus(action.operation.probe(state))
        except Exception as exc:  # noqa: BLE001
            error = ProbeError(action.id, exc)
            logger.warning("%s; treating as absent", error)
            logger.debug("probe traceback for %s", action.id, exc_info=True)
            return ProbeStatus.ABSENT
        logger.debug("action=%s probe=%s", action.id, status.value)
        return status
