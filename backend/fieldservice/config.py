from pathlib import Path
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    data_dir: Path = Path.home() / "FieldService"
    api_prefix: str = "/api/v1"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    # Materialization bounds
    default_horizon_months: int = 3
    max_occurrences_per_run: int = 200
    # Hard ceiling on a single materialization gap, independent of the rule.
    max_horizon_days: int = 365

    # Calendar preview bounds
    max_calendar_range_days: int = 400
    max_virtual_per_series: int = 500

    # Rendering only; storage is always UTC for occurrences.
    display_timezone: str = "America/New_York"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db.sqlite"

    model_config = {"env_prefix": "FIELDSERVICE_"}


settings = Settings()
