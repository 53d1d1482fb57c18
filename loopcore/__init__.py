"""loopcore: automated insulin-delivery control loop core."""

__version__ = "0.1.0"
