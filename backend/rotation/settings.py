from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ROTATION_", extra="ignore")

    db_url: str = "sqlite:///./rotation.db"
    log_level: str = "INFO"

    # Dump detection
    min_dump_pct: float = 0.30
    bo_lookback_days: int = 190

    # Holder anomaly score (robust z over trailing history)
    history_lookback_days: int = 1095
    min_history_quarters: int = 12
    fallback_dump_z: float = 2.0
    mad_consistency: float = 1.4826

    # Signals
    uhf_baseline_days: int = 31

    # Scoring
    dump_gate_z: float = 1.5
    eow_trading_days: int = 5
    extension_min_confidence: float = 0.5
    high_confidence_r_score: float = 0.7

    # Optional: OpenFIGI identifier resolution (CUSIP <-> ticker)
    openfigi_api_key: str = ""
    openfigi_rps: float = 2.0

    cors_origins: str = "http://localhost:5173,http://127.0.0.1:5173"


settings = Settings()
