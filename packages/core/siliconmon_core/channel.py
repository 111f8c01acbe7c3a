"""Single-slot snapshot handoff between the sampling thread and the renderer."""

from __future__ import annotations

import threading

from siliconmon_telemetry.models import SystemSnapshot


class SnapshotChannel:
    """Overwrite-on-publish mailbox holding only the newest snapshot.

    Publishing swaps one reference; readers never see a partial snapshot and
    never wait. Unread snapshots are simply replaced.
    """

    def __init__(self, initial: SystemSnapshot | None = None) -> None:
        self._latest = initial or SystemSnapshot.empty()
        self._cond = threading.Condition(threading.Lock())
        self._published = 0

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, snapshot: SystemSnapshot) -> None:
        with self._cond:
            if snapshot.generation <= self._latest.generation:
                raise ValueError(
                    f"generation {snapshot.generation} does not follow {self._latest.generation}"
                )
            self._latest = snapshot
            self._published += 1
            self._cond.notify_all()

    def latest(self) -> SystemSnapshot:
        return self._latest

    def wait_for_generation(self, generation: int, timeout: float | None = None) -> SystemSnapshot | None:
        """Block until a snapshot at or past ``generation`` is published.

        For headless consumers only; the render loop uses ``latest()``.
        """
        with self._cond:
            ok = self._cond.wait_for(lambda: self._latest.generation >= generation, timeout=timeout)
            return self._latest if ok else None
