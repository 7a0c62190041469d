"""
Background pre-change snapshots.

Destructive schema operations ask for a snapshot of the schema as it is
right before the change. The request is fire-and-forget: the caller does not
await the snapshot, and a failing snapshot never fails the caller.

Invariants:
    - request() never raises into the caller
    - Each request starts capturing before request() returns, so the capture
      reflects the schema before the caller's DDL runs
    - Failures go to the dedicated background logger, not the caller
    - Running tasks are strongly referenced until they finish
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .manager import SnapshotManager, SnapshotType

logger = logging.getLogger(__name__)

background_logger = logging.getLogger("baas.schemavault.snapshot.background")


class BackgroundSnapshotter:
    """Runs pre-change snapshots as detached asyncio tasks.

    Example:
        >>> snapshotter = BackgroundSnapshotter(snapshot_manager)
        >>> await snapshotter.request(description="Before dropping table: notes")
        >>> ... run DDL ...
        >>> await snapshotter.drain()
    """

    def __init__(self, snapshot_manager: SnapshotManager, enabled: bool = True) -> None:
        """Initialize the snapshotter.

        Args:
            snapshot_manager: Manager that performs the capture
            enabled: When False, requests are ignored
        """
        self.snapshot_manager = snapshot_manager
        self.enabled = enabled
        self._tasks: Set[asyncio.Task] = set()
        self._requested = 0
        self._completed = 0
        self._failed = 0

    async def request(
        self,
        description: str,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
        snapshot_type: SnapshotType = SnapshotType.PRE_CHANGE,
    ) -> Optional[asyncio.Task]:
        """Start a snapshot in the background.

        Returns:
            The running task, or None when disabled
        """
        if not self.enabled:
            return None

        task = asyncio.create_task(
            self._run(
                name=name,
                description=description,
                created_by=created_by,
                snapshot_type=snapshot_type,
            )
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._requested += 1

        # Let the task run up to its first suspension point. Capture is
        # synchronous, so the schema is read before the caller continues.
        await asyncio.sleep(0)
        return task

    async def _run(self, **options: Any) -> Optional[str]:
        try:
            snapshot_id = await self.snapshot_manager.create_snapshot(**options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed += 1
            background_logger.warning(
                "Background snapshot failed",
                extra={"description": options.get("description"), "error": str(e)},
                exc_info=True,
            )
            return None

        self._completed += 1
        logger.debug(
            "Background snapshot completed",
            extra={"snapshot_id": snapshot_id, "description": options.get("description")},
        )
        return snapshot_id

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all outstanding snapshot tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "requested": self._requested,
            "completed": self._completed,
            "failed": self._failed,
            "pending": self.pending,
        }
