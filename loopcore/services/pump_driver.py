"""Pump driver interface.

One ``PumpDriver`` subclass exists per device family. Drivers are registered
by their manager identifier and picked when the configuration is loaded
(``restore_pump_driver`` reads the identifier from the persisted raw state).

A driver talks back to the loop only through its delegate, the device sync
state machine, which funnels every callback onto its serial queue.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum, auto
from typing import Any, ClassVar, Protocol

from loopcore.config import settings
from loopcore.core.errors import PumpDriverError
from loopcore.logging_config import get_logger
from loopcore.schemas.alert import DeviceAlert
from loopcore.schemas.glucose import AnalyteSample
from loopcore.schemas.pump import PumpEvent, PumpStatus

logger = get_logger(__name__)


class GlucoseFetchKind(StrEnum):
    """Outcome of a CGM read through the pump."""

    no_data = auto()
    unreliable_data = auto()
    new_data = auto()
    error = auto()


@dataclass(frozen=True)
class GlucoseFetchResult:
    """Samples (or the reason there are none) from a CGM read."""

    kind: GlucoseFetchKind
    samples: list[AnalyteSample] = field(default_factory=list)
    error: Exception | None = None

    @classmethod
    def no_data(cls) -> "GlucoseFetchResult":
        return cls(GlucoseFetchKind.no_data)

    @classmethod
    def unreliable_data(cls) -> "GlucoseFetchResult":
        return cls(GlucoseFetchKind.unreliable_data)

    @classmethod
    def new_data(cls, samples: list[AnalyteSample]) -> "GlucoseFetchResult":
        return cls(GlucoseFetchKind.new_data, samples=list(samples))

    @classmethod
    def failed(cls, error: Exception) -> "GlucoseFetchResult":
        return cls(GlucoseFetchKind.error, error=error)


class PumpDriverDelegate(Protocol):
    """Callbacks a driver uses to report to the loop."""

    async def pump_did_update_status(self, status: PumpStatus) -> None: ...

    async def pump_has_new_events(self, events: list[PumpEvent]) -> None: ...

    async def pump_did_read_reservoir(self, units: float, at: datetime) -> None: ...

    async def pump_did_error(self, error: PumpDriverError) -> None: ...

    async def pump_recommends_loop(self) -> None: ...

    async def pump_will_deactivate(self) -> None: ...

    async def start_date_for_new_events(self, now: datetime | None = None) -> datetime: ...

    async def issue_alert(
        self, alert: DeviceAlert, issued_date: datetime | None = None
    ) -> None: ...

    async def retract_alert(self, alert_identifier: str) -> None: ...


class PumpDriver(ABC):
    """Base class for pump drivers."""

    manager_identifier: ClassVar[str]
    localized_title: ClassVar[str]

    # Drivers with a pump-integrated CGM override fetch_new_glucose
    has_cgm: ClassVar[bool] = False

    def __init__(self):
        self.delegate: PumpDriverDelegate | None = None

    @classmethod
    def from_raw_state(cls, state: dict[str, Any]) -> "PumpDriver":
        """Rebuild a driver from the state returned by ``raw_state``."""
        return cls()

    @property
    @abstractmethod
    def raw_state(self) -> dict[str, Any]:
        """JSON-serializable state needed to restore the driver."""

    @abstractmethod
    async def refresh_data(self) -> None:
        """Read current pump data and report it through the delegate.

        Raises:
            PumpDriverError: Communication with the pump failed
        """

    @abstractmethod
    def current_status(self) -> PumpStatus:
        """Last known status snapshot."""

    @abstractmethod
    def active_alerts(self) -> list[DeviceAlert]:
        """Alerts the pump itself still considers active."""

    @abstractmethod
    async def acknowledge_alert(self, alert_identifier: str) -> None:
        """Acknowledge an alert on the pump.

        Raises:
            PumpDriverError: The pump did not accept the acknowledgement
        """

    @property
    def max_basal_ceiling(self) -> float:
        """Highest temp basal rate (U/h) accepted into pump history."""
        return settings.default_max_basal

    @property
    def supported_bolus_volumes(self) -> list[float]:
        """Deliverable bolus volumes, smallest first."""
        return []

    async def fetch_new_glucose(self, since: datetime) -> GlucoseFetchResult:
        """Read CGM samples newer than ``since`` (drivers with ``has_cgm``)."""
        return GlucoseFetchResult.no_data()


_DRIVERS: dict[str, type[PumpDriver]] = {}


def register_driver(driver_class: type[PumpDriver]) -> type[PumpDriver]:
    """Class decorator adding a driver to the registry."""
    identifier = driver_class.manager_identifier
    existing = _DRIVERS.get(identifier)
    if existing is not None and existing is not driver_class:
        raise ValueError(f"Duplicate pump driver identifier: {identifier}")
    _DRIVERS[identifier] = driver_class
    return driver_class


def get_driver_class(manager_identifier: str) -> type[PumpDriver] | None:
    return _DRIVERS.get(manager_identifier)


def available_drivers() -> list[str]:
    return sorted(_DRIVERS)


def driver_from_raw_value(raw: dict[str, Any] | None) -> PumpDriver | None:
    """Instantiate the driver described by a persisted raw value.

    The raw value is ``{"manager_identifier": ..., "state": {...}}``. Returns
    None when it is missing or names an unknown driver.
    """
    if not raw:
        return None
    identifier = raw.get("manager_identifier")
    state = raw.get("state")
    if not isinstance(identifier, str) or not isinstance(state, dict):
        logger.warning("Persisted pump driver state is malformed")
        return None
    driver_class = get_driver_class(identifier)
    if driver_class is None:
        logger.warning("Unknown pump driver in persisted state", manager_identifier=identifier)
        return None
    return driver_class.from_raw_state(state)


def raw_value_for(driver: PumpDriver) -> dict[str, Any]:
    return {"manager_identifier": driver.manager_identifier, "state": driver.raw_state}
