"""Loop core: serial execution, signals and the decision pipeline."""
