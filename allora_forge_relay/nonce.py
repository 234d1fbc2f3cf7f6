"""Submission window arithmetic and open nonce discovery."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .connector import LedgerConnector
from .models import TopicDetails

logger = logging.getLogger(__name__)

__all__ = ["MAX_SCAN_DEPTH", "submission_window", "in_window", "scan_heights", "NonceWindowResolver"]

MAX_SCAN_DEPTH = 200


def submission_window(topic: TopicDetails) -> Tuple[int, int]:
    """Inclusive ``(start, end)`` block range in which workers may submit."""

    return topic.window_start, topic.window_end


def in_window(topic: TopicDetails, height: int) -> bool:
    start, end = submission_window(topic)
    return start <= height <= end


def scan_heights(topic: TopicDetails, current_height: int, depth: int = MAX_SCAN_DEPTH) -> List[int]:
    """Candidate nonce heights, most recent first.

    The list never holds more than ``min(depth, worker_submission_window)``
    entries and never leaves the window.
    """

    start, end = submission_window(topic)
    limit = max(1, min(depth, topic.worker_submission_window))
    top = min(current_height, end)
    bottom = max(start, top - limit + 1)
    return list(range(top, bottom - 1, -1))


class NonceWindowResolver:
    def __init__(self, connector: LedgerConnector, scan_depth: int = MAX_SCAN_DEPTH) -> None:
        self.connector = connector
        self.scan_depth = scan_depth

    async def derive_open_nonce(self, topic_id: int) -> Optional[int]:
        """Most recent unfulfilled worker nonce for ``topic_id`` or ``None``.

        Outside the window this costs exactly two reads. Any read that cannot
        be completed yields ``None``; the scheduler will try again next cycle.
        """

        topic = await self.connector.query_topic(topic_id, check_active=False)
        if topic is None:
            logger.warning("Topic %s could not be read; no nonce", topic_id)
            return None
        height = await self.connector.get_current_height()
        if height is None:
            logger.warning("Current height unavailable; no nonce for topic %s", topic_id)
            return None

        start, end = submission_window(topic)
        if not start <= height <= end:
            logger.info("Topic %s window [%d, %d] is closed at height %d", topic_id, start, end, height)
            return None

        for candidate in scan_heights(topic, height, self.scan_depth):
            unfulfilled = await self.connector.is_worker_nonce_unfulfilled(topic_id, candidate)
            if unfulfilled:
                logger.info("Open nonce for topic %s at height %d", topic_id, candidate)
                return candidate
        logger.info("No unfulfilled nonce in window [%d, %d] for topic %s", start, end, topic_id)
        return None

    async def can_submit(self, topic_id: int, address: str) -> bool:
        """Eligibility check that permits when the chain cannot be queried."""

        allowed = await self.connector.can_submit(topic_id, address)
        if allowed is None:
            logger.warning("Eligibility for %s on topic %s unknown; permitting", address, topic_id)
            return True
        return allowed

    async def window_is_open(self, topic_id: int, nonce_height: int) -> bool:
        """Re-check that ``nonce_height`` is still inside the window at the current height."""

        topic = await self.connector.query_topic(topic_id, check_active=False)
        height = await self.connector.get_current_height()
        if topic is None or height is None:
            logger.warning("Could not re-validate window for topic %s", topic_id)
            return False
        if not (in_window(topic, height) and in_window(topic, nonce_height)):
            logger.warning(
                "Window for topic %s closed: nonce %d, height %d, window [%d, %d]",
                topic_id,
                nonce_height,
                height,
                topic.window_start,
                topic.window_end,
            )
            return False
        return True
