"""Multi-list coordinator -- syncs related lists together with failure isolation.

All registered engines sync concurrently; each settles independently. A
failing list keeps serving its last successfully synced snapshot. Once every
engine has settled, the optional post-sync evaluation (smart status) runs
against whatever state is available; its errors are logged, never raised.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.leadsync.cache.engine import DeltaSyncEngine
from src.leadsync.cache.schemas import ListSyncOutcome, SyncReport, SyncedItem

logger = structlog.get_logger(__name__)

# Returns the number of status changes made by the pass.
PostSyncHook = Callable[[float | None], Awaitable[int]]


class MultiListCoordinator:
    """Runs DeltaSyncEngine instances for related lists.

    Args:
        engines: Engines to register up front (more can be added later).
        post_sync: Optional evaluation pass run after every ``sync_all``.
    """

    def __init__(
        self,
        engines: list[DeltaSyncEngine[Any]] | None = None,
        post_sync: PostSyncHook | None = None,
    ) -> None:
        self._engines: dict[str, DeltaSyncEngine[Any]] = {}
        self._post_sync = post_sync
        for engine in engines or []:
            self.register(engine)

    def register(self, engine: DeltaSyncEngine[Any]) -> None:
        """Register an engine under its name. Names must be unique."""
        if engine.name in self._engines:
            raise ValueError(f"Engine '{engine.name}' is already registered")
        self._engines[engine.name] = engine

    def set_post_sync(self, hook: PostSyncHook | None) -> None:
        self._post_sync = hook

    def engine(self, name: str) -> DeltaSyncEngine[Any]:
        """Return a registered engine by name.

        Raises:
            KeyError: If no engine has that name.
        """
        return self._engines[name]

    @property
    def names(self) -> list[str]:
        return list(self._engines)

    def get_items(self, name: str) -> list[SyncedItem[Any]]:
        """Current cached items of a list (as of its last successful sync)."""
        return self._engines[name].snapshot.values()

    async def load_all(self) -> None:
        """Warm-start every engine from the persistent store."""
        await asyncio.gather(*(engine.load() for engine in self._engines.values()))

    async def sync_all(self, timeout: float | None = None) -> SyncReport:
        """Sync every registered list concurrently, then run the post-sync pass.

        Args:
            timeout: Per-request timeout forwarded to every remote call.

        Returns:
            SyncReport with one outcome per list and the evaluation summary.
        """
        engines = list(self._engines.values())
        results = await asyncio.gather(
            *(engine.sync(timeout=timeout) for engine in engines),
            return_exceptions=True,
        )

        report = SyncReport()
        for engine, result in zip(engines, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    "coordinator.list_sync_failed",
                    list=engine.name,
                    error=str(result),
                    error_type=type(result).__name__,
                    cached_items=len(engine.snapshot),
                )
                report.outcomes.append(
                    ListSyncOutcome(
                        name=engine.name,
                        ok=False,
                        error=f"{type(result).__name__}: {result}",
                        item_count=len(engine.snapshot),
                        last_synced_at=engine.last_synced_at,
                    )
                )
            else:
                report.outcomes.append(
                    ListSyncOutcome(
                        name=engine.name,
                        ok=True,
                        item_count=len(engine.snapshot),
                        last_synced_at=engine.last_synced_at,
                    )
                )

        if self._post_sync is not None:
            try:
                report.status_changes = await self._post_sync(timeout)
                report.evaluated = True
            except Exception as exc:
                report.evaluation_error = f"{type(exc).__name__}: {exc}"
                logger.error("coordinator.post_sync_failed", error=str(exc))

        logger.info(
            "coordinator.sync_all_complete",
            lists=len(engines),
            failed=report.failed,
            evaluated=report.evaluated,
            status_changes=report.status_changes,
        )
        return report
