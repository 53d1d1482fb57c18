"""Simulated pump with an integrated CGM.

Used for development and in tests. Everything the pump would report is
scripted: queue events, set the reservoir, start temp basals, raise alerts,
feed glucose samples or make the next refresh fail.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from loopcore.core.errors import PumpDriverError
from loopcore.logging_config import get_logger
from loopcore.schemas.alert import DeviceAlert
from loopcore.schemas.glucose import AnalyteSample
from loopcore.schemas.pump import (
    BasalDeliveryState,
    BolusState,
    InsulinType,
    PumpEvent,
    PumpStatus,
    UnfinalizedTempBasal,
)
from loopcore.services.pump_driver import GlucoseFetchResult, PumpDriver, register_driver

logger = get_logger(__name__)

DEFAULT_LIFETIME_HOURS = 72
BOLUS_VOLUME_STEP = 0.05


@register_driver
class SimulatorPumpDriver(PumpDriver):
    """Pump simulator."""

    manager_identifier = "simulator"
    localized_title = "Pump Simulator"
    has_cgm = True

    def __init__(
        self,
        reservoir_level: float | None = 40.0,
        insulin_type: InsulinType | None = InsulinType.novolog,
        activated_at: datetime | None = None,
        lifetime_hours: int = DEFAULT_LIFETIME_HOURS,
        max_basal: float = 3.0,
        bolus_step: float = BOLUS_VOLUME_STEP,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.reservoir_level = reservoir_level
        self.insulin_type = insulin_type
        self.activated_at = activated_at
        self.lifetime_hours = lifetime_hours
        self.max_basal = max_basal
        self.bolus_step = bolus_step
        self.bolus_state = BolusState.none
        self.battery_percent = 100
        self.temp_basal: UnfinalizedTempBasal | None = None

        self.refresh_delay = 0.0
        self.recommend_loop_on_refresh = False
        self._events: list[PumpEvent] = []
        self._samples: list[AnalyteSample] = []
        self._alerts: dict[str, DeviceAlert] = {}
        self._refresh_error: PumpDriverError | None = None
        self._ack_error: PumpDriverError | None = None
        self._glucose_result: GlucoseFetchResult | None = None
        self.refresh_count = 0

    @classmethod
    def from_raw_state(cls, state: dict[str, Any]) -> "SimulatorPumpDriver":
        activated_at = state.get("activated_at")
        insulin_type = state.get("insulin_type")
        return cls(
            reservoir_level=state.get("reservoir_level"),
            insulin_type=InsulinType(insulin_type) if insulin_type else None,
            activated_at=datetime.fromisoformat(activated_at) if activated_at else None,
            lifetime_hours=state.get("lifetime_hours", DEFAULT_LIFETIME_HOURS),
            max_basal=state.get("max_basal", 3.0),
            bolus_step=state.get("bolus_step", BOLUS_VOLUME_STEP),
        )

    @property
    def raw_state(self) -> dict[str, Any]:
        return {
            "reservoir_level": self.reservoir_level,
            "insulin_type": self.insulin_type.value if self.insulin_type else None,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "lifetime_hours": self.lifetime_hours,
            "max_basal": self.max_basal,
            "bolus_step": self.bolus_step,
        }

    @property
    def max_basal_ceiling(self) -> float:
        return self.max_basal

    @property
    def supported_bolus_volumes(self) -> list[float]:
        steps = int(round(30 / self.bolus_step))
        return [round(self.bolus_step * i, 3) for i in range(1, steps + 1)]

    # Scripting

    def add_event(self, event: PumpEvent) -> None:
        self._events.append(event)

    def add_glucose(self, sample: AnalyteSample) -> None:
        self._samples.append(sample)

    def set_glucose_result(self, result: GlucoseFetchResult | None) -> None:
        """Force the outcome of the next CGM reads (None restores samples)."""
        self._glucose_result = result

    def start_temp_basal(self, rate: float, minutes: int, automatic: bool = True) -> None:
        start = self._clock()
        self.temp_basal = UnfinalizedTempBasal(
            units_per_hour=rate,
            start_date=start,
            end_date=start + timedelta(minutes=minutes),
            automatic=automatic,
        )

    def cancel_temp_basal(self) -> None:
        self.temp_basal = None

    def raise_alert(self, alert: DeviceAlert) -> None:
        self._alerts[alert.alert_identifier] = alert

    def clear_alerts(self) -> None:
        self._alerts.clear()

    def fail_next_refresh(self, error: PumpDriverError) -> None:
        self._refresh_error = error

    def fail_acknowledgements(self, error: PumpDriverError | None) -> None:
        self._ack_error = error

    # PumpDriver

    def current_status(self) -> PumpStatus:
        now = self._clock()
        expires_at = None
        if self.activated_at is not None:
            expires_at = self.activated_at + timedelta(hours=self.lifetime_hours)
        temp = self.temp_basal
        if temp is not None and temp.is_finished(now):
            temp = None
        return PumpStatus(
            timestamp=now,
            bolus_state=self.bolus_state,
            basal_delivery_state=(
                BasalDeliveryState.temp_basal if temp else BasalDeliveryState.active
            ),
            insulin_type=self.insulin_type,
            reservoir_level=self.reservoir_level,
            battery_percent=self.battery_percent,
            activated_at=self.activated_at,
            expires_at=expires_at,
            unfinalized_temp_basal=temp,
        )

    async def refresh_data(self) -> None:
        self.refresh_count += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)

        if self._refresh_error is not None:
            error, self._refresh_error = self._refresh_error, None
            raise error

        delegate = self.delegate
        if delegate is None:
            return

        now = self._clock()
        await delegate.pump_did_update_status(self.current_status())

        since = await delegate.start_date_for_new_events(now)
        events = [event for event in self._events if event.timestamp >= since]
        if events:
            await delegate.pump_has_new_events(events)

        if self.reservoir_level is not None:
            await delegate.pump_did_read_reservoir(self.reservoir_level, now)

        if self.recommend_loop_on_refresh:
            await delegate.pump_recommends_loop()

    def active_alerts(self) -> list[DeviceAlert]:
        return list(self._alerts.values())

    async def acknowledge_alert(self, alert_identifier: str) -> None:
        if self._ack_error is not None:
            raise self._ack_error
        if self._alerts.pop(alert_identifier, None) is None:
            raise PumpDriverError(f"No active alert {alert_identifier}")

    async def fetch_new_glucose(self, since: datetime) -> GlucoseFetchResult:
        if self._glucose_result is not None:
            return self._glucose_result
        samples = sorted(
            (sample for sample in self._samples if sample.date > since),
            key=lambda sample: sample.date,
        )
        if not samples:
            return GlucoseFetchResult.no_data()
        return GlucoseFetchResult.new_data(samples)
