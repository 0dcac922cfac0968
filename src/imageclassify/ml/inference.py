"""Bounded classification queue for the HTTP API.

Uploads are classified on worker threads via ``asyncio.to_thread`` so the
event loop never blocks on ONNX Runtime. At most ``max_concurrent`` images
are in flight; an upload that cannot get a slot within
``QUEUE_TIMEOUT_SECONDS`` is rejected with ``TimeoutError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imageclassify.ml.image_classifier import ClassifierService
    from imageclassify.ml.preprocessing import ImageSource

logger = logging.getLogger(__name__)

QUEUE_TIMEOUT_SECONDS: float = 5.0


class ClassificationQueue:
    """Runs ``ClassifierService.classify`` off the event loop, a few images at a time."""

    def __init__(self, classifier: ClassifierService, max_concurrent: int) -> None:
        self._classifier = classifier
        self._slots = asyncio.Semaphore(max_concurrent)
        # Both counters are only touched from the event loop.
        self._in_flight = 0
        self._waiting = 0

    @property
    def classifier(self) -> ClassifierService:
        return self._classifier

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return self._waiting

    async def classify(self, image: ImageSource) -> dict[str, float]:
        """Classify ``image`` once a slot is free.

        Raises:
            TimeoutError: If every slot stays busy for ``QUEUE_TIMEOUT_SECONDS``.
            ImageDecodeError: If the upload is not a decodable image.
        """
        self._waiting += 1
        try:
            async with asyncio.timeout(QUEUE_TIMEOUT_SECONDS):
                await self._slots.acquire()
        except TimeoutError:
            logger.warning(
                "No classification slot after %.1fs (%d in flight)", QUEUE_TIMEOUT_SECONDS, self._in_flight
            )
            raise
        finally:
            self._waiting -= 1

        self._in_flight += 1
        try:
            return await asyncio.to_thread(self._classifier.classify, image)
        finally:
            self._in_flight -= 1
            self._slots.release()
