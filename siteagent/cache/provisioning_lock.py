"""
Per-key provisioning guard.

Only one workflow runs at a time for a given LogicalKey inside this
process. Concurrent callers asking for the same kind of work (two
submissions of one site) await the in-flight result instead of starting a
second workflow. A caller asking for a different kind of work on the same
key (a repair while a provisioning run is in flight) waits for that run to
settle and then runs its own. The slot is released when the work settles,
success or failure, so a later call can retry.

This is not a distributed lock. Multi-instance deployments can still race;
the provisioner's re-check of remote existence right before creation is what
narrows that window.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVISION = "provision"
REPAIR = "repair"


class KeyedLock(ABC):
    """Keyed mutual exclusion with automatic cleanup on completion."""

    @abstractmethod
    async def run(self, key: str, work: Callable[[], Awaitable[T]], kind: str = PROVISION) -> T:
        """
        Run ``work`` under ``key``. Joins a run of the same ``kind`` already in
        flight; waits for a run of another kind to settle first.
        """

    @abstractmethod
    def in_flight(self, key: str) -> bool:
        """True while a run for ``key`` has not settled."""


class ProvisioningLockManager(KeyedLock):
    """
    Maps each key to the kind and task of the workflow running under it.

    Lookup and insertion happen without an intervening ``await``, so on a
    single event loop two callers can never both see "no task" and both
    start one.

    Usage:
        guard = ProvisioningLockManager()
        result = await guard.run("example.com", lambda: provision("example.com"))
        repaired = await guard.run("example.com", lambda: repair(agent_id), kind="repair")
    """

    def __init__(self):
        self._inflight: Dict[str, Tuple[str, asyncio.Future]] = {}
        self._joined = 0
        self._waited = 0

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def keys(self) -> List[str]:
        return list(self._inflight.keys())

    async def run(self, key: str, work: Callable[[], Awaitable[T]], kind: str = PROVISION) -> T:
        while key in self._inflight:
            running_kind, existing = self._inflight[key]
            if running_kind == kind:
                self._joined += 1
                logger.info(f"[Lock] Joining in-flight {kind} for '{key}'")
                return await asyncio.shield(existing)
            self._waited += 1
            logger.info(f"[Lock] Waiting for {running_kind} of '{key}' before {kind}")
            await asyncio.wait([existing])

        task = asyncio.ensure_future(work())
        self._inflight[key] = (kind, task)
        task.add_done_callback(lambda t, k=key: self._release(k, t))
        logger.info(f"[Lock] Started {kind} for '{key}'")
        # One caller going away (e.g. client disconnect) must not cancel the shared work
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Future) -> None:
        entry = self._inflight.get(key)
        if entry is not None and entry[1] is task:
            del self._inflight[key]
        if task.cancelled():
            logger.warning(f"[Lock] Work for '{key}' was cancelled")
        elif task.exception() is not None:
            logger.warning(f"[Lock] Work for '{key}' failed; slot released for retry")

    def get_stats(self) -> Dict[str, Any]:
        return {"in_flight": len(self._inflight), "joined": self._joined, "waited": self._waited}
