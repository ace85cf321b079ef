import os
import logging
from typing import List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

def positive_int_env(name: str, default: str) -> int:
    """Read an integer setting that must be greater than zero."""
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fleetsafe.db")

# Telemetry / violation detection
VIOLATION_BUCKET_SECONDS = positive_int_env("VIOLATION_BUCKET_SECONDS", "60")
TELEMETRY_RATE_LIMIT = positive_int_env("TELEMETRY_RATE_LIMIT", "100")
TELEMETRY_RATE_WINDOW_SECONDS = positive_int_env("TELEMETRY_RATE_WINDOW_SECONDS", "60")

# Speed severity bands (km/h over the limit)
MINOR_OVERAGE_KPH = float(os.getenv("MINOR_OVERAGE_KPH", "10"))
MAJOR_OVERAGE_KPH = float(os.getenv("MAJOR_OVERAGE_KPH", "20"))

# Enforcement rule lookback windows
SPEED_LOOKBACK_MINUTES = int(os.getenv("SPEED_LOOKBACK_MINUTES", "60"))
ALERT_LOOKBACK_MINUTES = int(os.getenv("ALERT_LOOKBACK_MINUTES", "30"))

# Escalation defaults (minutes)
DEFAULT_ESCALATION_INTERVALS = [
    int(v) for v in os.getenv("DEFAULT_ESCALATION_INTERVALS", "5,15,30").split(",") if v.strip()
]

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
LOG_FILE = os.getenv("LOG_FILE", "fleetsafe.log")

# Development configuration
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

class Config:
    """Configuration class with runtime overrides."""

    def __init__(self):
        self.database_url = DATABASE_URL

        # Detection
        self.violation_bucket_seconds = VIOLATION_BUCKET_SECONDS
        self.telemetry_rate_limit = TELEMETRY_RATE_LIMIT
        self.telemetry_rate_window_seconds = TELEMETRY_RATE_WINDOW_SECONDS
        self.minor_overage_kph = MINOR_OVERAGE_KPH
        self.major_overage_kph = MAJOR_OVERAGE_KPH

        # Enforcement
        self.speed_lookback_minutes = SPEED_LOOKBACK_MINUTES
        self.alert_lookback_minutes = ALERT_LOOKBACK_MINUTES
        self.default_escalation_intervals = list(DEFAULT_ESCALATION_INTERVALS)

        # Logging
        self.log_level = LOG_LEVEL
        self.log_format = LOG_FORMAT
        self.log_file = LOG_FILE

        # Development
        self.debug = DEBUG

    def get_detection_config(self) -> dict:
        """Get detection configuration as dictionary."""
        return {
            "violation_bucket_seconds": self.violation_bucket_seconds,
            "minor_overage_kph": self.minor_overage_kph,
            "major_overage_kph": self.major_overage_kph,
            "telemetry_rate_limit": self.telemetry_rate_limit,
            "telemetry_rate_window_seconds": self.telemetry_rate_window_seconds,
        }

    def get_enforcement_config(self) -> dict:
        """Get enforcement configuration as dictionary."""
        return {
            "speed_lookback_minutes": self.speed_lookback_minutes,
            "alert_lookback_minutes": self.alert_lookback_minutes,
            "default_escalation_intervals": list(self.default_escalation_intervals),
        }

# Global configuration instance
config = Config()

def setup_logging():
    """Setup logging configuration; a no-op once the root logger has handlers."""
    if not logging.getLogger().handlers:
        handlers: List[logging.Handler] = [logging.StreamHandler()]
        if config.log_file:
            handlers.append(logging.FileHandler(config.log_file))

        logging.basicConfig(
            level=getattr(logging, config.log_level, logging.INFO),
            format=config.log_format,
            handlers=handlers
        )

    # Set specific logger levels
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("fleetsafe")

# Initialize logger
logger = setup_logging()
