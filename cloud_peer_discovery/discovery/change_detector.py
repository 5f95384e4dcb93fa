"""Endpoint diff engine: detects membership changes between published snapshots."""

from __future__ import annotations

import logging

from .models import DiscoverySnapshot, PeerEndpoint

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Remembers the last endpoint set and reports what each new snapshot adds and removes."""

    def __init__(self) -> None:
        self._previous: frozenset[PeerEndpoint] = frozenset()

    def reset(self) -> None:
        """Forget the stored endpoint set; the next snapshot is reported as all new."""
        logger.info("Change detector state reset")
        self._previous = frozenset()

    def detect(self, snapshot: DiscoverySnapshot) -> tuple[list[PeerEndpoint], list[PeerEndpoint]]:
        """Compare snapshot against the previous one.

        Returns:
            (added, removed), each sorted by (host, port).
        """
        current = snapshot.endpoints
        added = sorted(current - self._previous)
        removed = sorted(self._previous - current)
        self._previous = current

        if added or removed:
            logger.info(
                "Peer set changed in cycle %d: +%d -%d (%d total)",
                snapshot.cycle_id, len(added), len(removed), len(current),
                extra={
                    "cycle_id": snapshot.cycle_id,
                    "added": [str(e) for e in added],
                    "removed": [str(e) for e in removed],
                },
            )
        else:
            logger.debug("Peer set unchanged in cycle %d", snapshot.cycle_id)
        return added, removed
