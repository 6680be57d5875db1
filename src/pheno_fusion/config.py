import os
import logging
from typing import NamedTuple, Optional

# Configuration
NDVI_PROVIDER_URL = "http://localhost:8080/ndvi/report"
RADAR_PROVIDER_URL = "http://localhost:8080/sentinel1/series"
CLIMATE_PROVIDER_URL = "http://localhost:8080/climate"

DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_STEP_TIMEOUT = 120.0

# AI validation trigger policies
AI_VALIDATION_OFF = "OFF"
AI_VALIDATION_ON_PROCESS = "ON_PROCESS"
AI_VALIDATION_ON_LOW_CONFIDENCE = "ON_LOW_CONFIDENCE"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(NamedTuple):
    ndvi_provider_url: str = NDVI_PROVIDER_URL
    radar_provider_url: str = RADAR_PROVIDER_URL
    climate_provider_url: str = CLIMATE_PROVIDER_URL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    step_timeout: float = DEFAULT_STEP_TIMEOUT
    ai_validation: str = AI_VALIDATION_OFF
    sar_fusion_enabled: bool = True
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(
            f"[config] Invalid value for {name}: {raw!r}, using {default}"
        )
        return default


def load_settings() -> Settings:
    """Reads engine settings from PHENO_* environment variables."""
    policy = os.environ.get("PHENO_AI_VALIDATION", AI_VALIDATION_OFF).strip().upper()
    if policy not in (AI_VALIDATION_OFF, AI_VALIDATION_ON_PROCESS, AI_VALIDATION_ON_LOW_CONFIDENCE):
        policy = AI_VALIDATION_OFF

    return Settings(
        ndvi_provider_url=os.environ.get("PHENO_NDVI_PROVIDER_URL", NDVI_PROVIDER_URL),
        radar_provider_url=os.environ.get("PHENO_RADAR_PROVIDER_URL", RADAR_PROVIDER_URL),
        climate_provider_url=os.environ.get("PHENO_CLIMATE_PROVIDER_URL", CLIMATE_PROVIDER_URL),
        http_timeout=_env_float("PHENO_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        step_timeout=_env_float("PHENO_STEP_TIMEOUT", DEFAULT_STEP_TIMEOUT),
        ai_validation=policy,
        sar_fusion_enabled=_env_bool("PHENO_SAR_FUSION", True),
        log_level=os.environ.get("PHENO_LOG_LEVEL", "INFO").upper(),
    )


def setup_logging(level: Optional[str] = None):
    """Configures the package logger once."""
    logger = logging.getLogger("pheno_fusion")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level or load_settings().log_level)
    return logger
