"""Bundled pump drivers (importing this package registers them)."""

from loopcore.services.drivers.simulator import SimulatorPumpDriver

__all__ = ["SimulatorPumpDriver"]
