"""Glucose fetch adapter for pump-integrated CGMs.

Turns raw analyte samples into glucose readings with trend directions and
keeps a watermark so the sensor link is read at most once every few minutes.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Final

from loopcore.config import settings
from loopcore.core.errors import LoopCoreError
from loopcore.core.pipeline.keys import StateKey
from loopcore.logging_config import get_logger
from loopcore.schemas.glucose import AnalyteSample, GlucoseReading, TrendDirection
from loopcore.services.blob_store import BlobStore
from loopcore.services.pump_driver import GlucoseFetchKind, PumpDriver

logger = get_logger(__name__)

# Samples are requested from slightly before the watermark so the first new
# sample still has a predecessor for its trend
DIRECTION_OVERLAP: Final[timedelta] = timedelta(minutes=10)


def readings_from_samples(samples: Sequence[AnalyteSample]) -> list[GlucoseReading]:
    """Normalize samples (oldest first) into readings.

    The direction of each reading comes from the change since the previous
    sample; the first reading has none.
    """
    readings = []
    previous: int | None = None
    for sample in samples:
        value = int(sample.value_mgdl)
        direction = None if previous is None else TrendDirection.from_delta(value - previous)
        readings.append(
            GlucoseReading(
                id=sample.sync_identifier,
                value=value,
                timestamp=sample.date,
                direction=direction,
            )
        )
        previous = value
    return readings


class GlucoseFetchAdapter:
    """Reads new CGM samples through the current pump driver."""

    def __init__(
        self,
        blob_store: BlobStore,
        driver_provider: Callable[[], PumpDriver | None],
        timeout: float | None = None,
        min_interval: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.blob_store = blob_store
        self._driver_provider = driver_provider
        self.timeout = timeout if timeout is not None else settings.glucose_fetch_timeout_seconds
        self.min_interval = min_interval or timedelta(
            minutes=settings.glucose_fetch_min_interval_minutes
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    async def watermark(self) -> datetime | None:
        raw = await self.blob_store.retrieve(StateKey.GLUCOSE_FETCH_WATERMARK, None)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            logger.warning("Stored glucose watermark is invalid, ignoring it", value=raw)
            return None

    async def fetch(self, now: datetime | None = None) -> list[GlucoseReading]:
        """Return readings newer than the last fetch.

        Never raises: every failure (timeout, driver error, no or unreliable
        data) yields an empty list.
        """
        now = now or self._clock()
        driver = self._driver_provider()
        if driver is None or not driver.has_cgm:
            logger.debug("Pump has no integrated CGM, skipping glucose fetch")
            return []

        watermark = await self.watermark()
        if watermark is not None and now - watermark < self.min_interval:
            return []

        start = watermark or now - timedelta(hours=settings.glucose_history_hours)
        since = start - DIRECTION_OVERLAP
        try:
            result = await asyncio.wait_for(driver.fetch_new_glucose(since), timeout=self.timeout)
        except TimeoutError:
            logger.warning("Glucose fetch timed out", timeout_seconds=self.timeout)
            return []
        except LoopCoreError as e:
            logger.warning("Glucose fetch failed", error=str(e))
            return []
        except Exception as e:
            logger.error("Unexpected error in glucose fetch", error=str(e), exc_info=True)
            return []

        match result.kind:
            case GlucoseFetchKind.no_data:
                logger.debug("Pump CGM returned no data")
                return []
            case GlucoseFetchKind.unreliable_data:
                logger.debug("Pump CGM returned unreliable data")
                return []
            case GlucoseFetchKind.error:
                logger.warning("Glucose fetch failed", error=str(result.error))
                return []

        readings = readings_from_samples(sorted(result.samples, key=lambda sample: sample.date))
        # Overlap samples only seed the first trend; never hand them out twice
        if watermark is not None:
            readings = [reading for reading in readings if reading.timestamp > watermark]
        if readings:
            await self.blob_store.save(
                StateKey.GLUCOSE_FETCH_WATERMARK, readings[-1].timestamp.isoformat()
            )
            logger.info(
                "Fetched pump CGM glucose",
                count=len(readings),
                latest=readings[-1].value,
            )
        return readings
