"""Loop services: stores, pump drivers and the device sync state machine."""
