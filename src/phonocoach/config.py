"""Configuration settings for the pronunciation coach."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent
PACKAGE_DIR = Path(__file__).parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
WORD_POOLS_DIR = Path(os.getenv("WORD_POOLS_DIR", str(PACKAGE_DIR / "data" / "word_pools")))

# Progression settings
CALIBRATION_STEPS = 20  # items in the initial assessment
STEPS_PER_BAND = 5  # calibration items drawn from each difficulty band


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        DATA_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR
    word_pools_dir: Path = WORD_POOLS_DIR


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'phonocoach.db'}")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class GatewaySettings:
    """Speech backend gateway settings."""
    timeout: float = float(os.getenv("GATEWAY_TIMEOUT", "20"))
    max_retries: int = int(os.getenv("GATEWAY_MAX_RETRIES", "2"))
    retry_backoff: float = float(os.getenv("GATEWAY_RETRY_BACKOFF", "0.5"))
    ca_cert_path: Optional[str] = os.getenv("ASR_CERT_PATH")
    secret_backend: str = os.getenv("SECRET_BACKEND", "database")
    api_key_name: str = os.getenv("ASR_API_KEY_NAME", "ASR_API_KEY")
    generation_url_key: str = os.getenv("ASR_GENERATION_URL_KEY", "ASR_URL_{lang}")
    recognition_url_key: str = os.getenv("ASR_RECOGNITION_URL_KEY", "ASR_ANALYZE_URL_{lang}")


@dataclass
class ProgressionSettings:
    """Calibration and difficulty progression settings."""
    calibration_steps: int = CALIBRATION_STEPS
    steps_per_band: int = STEPS_PER_BAND
    calibration_pass_threshold: float = float(os.getenv("CALIBRATION_PASS_THRESHOLD", "0.34"))
    advance_streak: int = int(os.getenv("ADVANCE_STREAK", "3"))
    regress_streak: int = int(os.getenv("REGRESS_STREAK", "3"))
    success_max_errors: int = int(os.getenv("SUCCESS_MAX_ERRORS", "0"))


@dataclass
class PracticeSettings:
    """Word selection and submission settings."""
    default_language: str = os.getenv("DEFAULT_LANGUAGE", "en")
    generate_on_repeat: bool = os.getenv("GENERATE_ON_REPEAT", "true").lower() == "true"
    lease_ttl_seconds: int = int(os.getenv("LEASE_TTL_SECONDS", "60"))
    phoneme_summary_limit: int = int(os.getenv("PHONEME_SUMMARY_LIMIT", "5"))


@dataclass
class MonitoringSettings:
    """Metrics exporter settings."""
    enabled: bool = os.getenv("METRICS_ENABLED", "false").lower() == "true"
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_gateway_settings() -> GatewaySettings:
    """Get gateway settings."""
    return GatewaySettings()


def get_progression_settings() -> ProgressionSettings:
    """Get progression settings."""
    return ProgressionSettings()


def get_practice_settings() -> PracticeSettings:
    """Get practice settings."""
    return PracticeSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    gateway: GatewaySettings = field(default_factory=get_gateway_settings)
    progression: ProgressionSettings = field(default_factory=get_progression_settings)
    practice: PracticeSettings = field(default_factory=get_practice_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.gateway.timeout <= 0:
            raise ValueError("GATEWAY_TIMEOUT must be positive")

        if self.gateway.max_retries < 0:
            raise ValueError("GATEWAY_MAX_RETRIES cannot be negative")

        if self.gateway.secret_backend not in ("database", "env"):
            raise ValueError("SECRET_BACKEND must be 'database' or 'env'")

        if "{lang}" not in self.gateway.generation_url_key or \
           "{lang}" not in self.gateway.recognition_url_key:
            raise ValueError("Endpoint secret names must contain a {lang} placeholder")

        if self.progression.steps_per_band < 1:
            raise ValueError("steps_per_band must be positive")

        if self.progression.calibration_steps < self.progression.steps_per_band:
            raise ValueError("calibration_steps must cover at least one band")

        if self.progression.advance_streak < 1 or self.progression.regress_streak < 1:
            raise ValueError("ADVANCE_STREAK and REGRESS_STREAK must be positive")

        if self.progression.calibration_pass_threshold <= 0:
            raise ValueError("CALIBRATION_PASS_THRESHOLD must be positive")

        if self.progression.success_max_errors < 0:
            raise ValueError("SUCCESS_MAX_ERRORS cannot be negative")

        if self.practice.lease_ttl_seconds < 1:
            raise ValueError("LEASE_TTL_SECONDS must be positive")


# Create global settings instance
settings = Settings()
settings.validate()
