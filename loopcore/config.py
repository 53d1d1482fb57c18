"""Loop configuration using Pydantic Settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Loop settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Database (on-device SQLite by default; postgresql+asyncpg also works)
    database_url: str = "sqlite+aiosqlite:///./loopcore.db"
    run_migrations_on_startup: bool = True

    # HTTP status API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Logging
    log_format: str = "json"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "loopcore"

    # Heartbeat / decision cycle
    heartbeat_enabled: bool = True
    heartbeat_interval_minutes: int = 5

    # Pump polling
    pump_poll_timeout_seconds: float = 180.0
    pump_driver: str = ""  # manager identifier used when nothing is persisted
    pump_history_hours: int = 24
    default_max_basal: float = 3.0  # U/h, used until pump settings are saved

    # Reservoir readings above this ceiling are reported as unknown.
    # Needs domain review: some pods report "above 50 U" as an opaque value.
    reservoir_plausibility_ceiling: float = 50.0

    # Pump-integrated CGM
    glucose_fetch_timeout_seconds: float = 180.0
    glucose_fetch_min_interval_minutes: int = 5
    glucose_history_hours: int = 24

    # Sensitivity recalibration (autosens)
    autosens_enabled: bool = True
    autosens_interval_minutes: int = 30

    # Autotune
    autotune_enabled: bool = False
    autotune_hour: int = 4  # Local hour of the nightly autotune run
    autotune_categorize_uam_as_basal: bool = False
    autotune_tune_insulin_curve: bool = False

    # Stage functions: stage name -> command line of an external program
    stage_commands: dict[str, str] = {}
    stage_timeout_seconds: float = 60.0

    # Testing
    testing: bool = False  # Set to True during tests to disable connection pooling


settings = Settings()
