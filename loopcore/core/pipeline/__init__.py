"""Decision pipeline: artifact keys, stage functions and the orchestrator."""
