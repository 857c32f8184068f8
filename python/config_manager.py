"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "kyc_user"
    password: str = "kyc_password"
    name: str = "kyc_database"


@dataclass
class AutomationConfig:
    """Lifecycle screening triggers"""
    auto_screen_on_create: bool = True
    auto_screen_on_update: bool = True
    batch_interval_hours: Optional[float] = None  # None disables batch sweeps
    batch_size: int = 50
    batch_delay_seconds: float = 0.1
    key_attributes: List[str] = field(default_factory=lambda: [
        'full_name', 'legal_name', 'date_of_birth', 'org_identifier', 'country'
    ])


@dataclass
class ScreeningConfig:
    """Screening provider and classification settings"""
    provider: str = "static"  # static, http
    provider_url: str = ""
    provider_api_key: str = ""
    provider_timeout_seconds: float = 10.0
    adverse_media_threshold: int = 2


@dataclass
class KycConfig:
    """Verification reuse and refresh windows"""
    reuse_window_days: int = 90
    review_window_days: int = 365
    refresh_days: Dict[str, int] = field(default_factory=lambda: {
        'HIGH': 60,
        'MEDIUM': 180,
        'LOW': 365
    })


@dataclass
class AuditConfig:
    """Audit write channel settings"""
    async_writes: bool = True
    queue_size: int = 1000


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/screening.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    operations_log_dir: str = "logs"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.automation: AutomationConfig = AutomationConfig()
        self.screening: ScreeningConfig = ScreeningConfig()
        self.kyc: KycConfig = KycConfig()
        self.audit: AuditConfig = AuditConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config root must be a mapping")

        self._parse_automation()
        self._parse_screening()
        self._parse_kyc()
        self._parse_audit()
        self._parse_logging()
        self._parse_database()
        self._validate()

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name)
        )

    def _parse_automation(self) -> None:
        """Parse automation configuration"""
        cfg = self._raw_config.get('automation', {})
        self.automation = AutomationConfig(
            auto_screen_on_create=cfg.get('auto_screen_on_create', True),
            auto_screen_on_update=cfg.get('auto_screen_on_update', True),
            batch_interval_hours=cfg.get('batch_interval_hours'),
            batch_size=cfg.get('batch_size', 50),
            batch_delay_seconds=cfg.get('batch_delay_seconds', 0.1),
            key_attributes=cfg.get('key_attributes', self.automation.key_attributes)
        )

    def _parse_screening(self) -> None:
        """Parse screening provider configuration"""
        cfg = self._raw_config.get('screening', {})
        self.screening = ScreeningConfig(
            provider=cfg.get('provider', 'static'),
            provider_url=cfg.get('provider_url', ''),
            provider_api_key=cfg.get('provider_api_key', ''),
            provider_timeout_seconds=cfg.get('provider_timeout_seconds', 10.0),
            adverse_media_threshold=cfg.get('adverse_media_threshold', 2)
        )

    def _parse_kyc(self) -> None:
        """Parse KYC freshness configuration"""
        cfg = self._raw_config.get('kyc', {})
        refresh_days = dict(self.kyc.refresh_days)
        refresh_days.update(cfg.get('refresh_days', {}))
        self.kyc = KycConfig(
            reuse_window_days=cfg.get('reuse_window_days', 90),
            review_window_days=cfg.get('review_window_days', 365),
            refresh_days=refresh_days
        )

    def _parse_audit(self) -> None:
        """Parse audit channel configuration"""
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            async_writes=cfg.get('async_writes', True),
            queue_size=cfg.get('queue_size', 1000)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/screening.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            operations_log_dir=cfg.get('operations_log_dir', 'logs')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'automation': {
                'auto_screen_on_create': self.automation.auto_screen_on_create,
                'auto_screen_on_update': self.automation.auto_screen_on_update,
                'batch_interval_hours': self.automation.batch_interval_hours,
                'batch_size': self.automation.batch_size,
                'batch_delay_seconds': self.automation.batch_delay_seconds,
                'key_attributes': list(self.automation.key_attributes)
            },
            'screening': {
                'provider': self.screening.provider,
                'provider_url': self.screening.provider_url,
                'provider_timeout_seconds': self.screening.provider_timeout_seconds,
                'adverse_media_threshold': self.screening.adverse_media_threshold
            },
            'kyc': {
                'reuse_window_days': self.kyc.reuse_window_days,
                'review_window_days': self.kyc.review_window_days,
                'refresh_days': dict(self.kyc.refresh_days)
            },
            'audit': {
                'async_writes': self.audit.async_writes,
                'queue_size': self.audit.queue_size
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid value found
        """
        auto = self.automation
        if auto.batch_interval_hours is not None and auto.batch_interval_hours <= 0:
            raise ConfigurationError("automation.batch_interval_hours must be positive or null")
        if auto.batch_size < 1:
            raise ConfigurationError("automation.batch_size must be at least 1")
        if auto.batch_delay_seconds < 0:
            raise ConfigurationError("automation.batch_delay_seconds cannot be negative")
        if not auto.key_attributes:
            raise ConfigurationError("automation.key_attributes cannot be empty")

        if self.screening.provider not in ('static', 'http'):
            raise ConfigurationError(
                f"screening.provider must be 'static' or 'http', got '{self.screening.provider}'"
            )
        if self.screening.provider == 'http' and not self.screening.provider_url:
            raise ConfigurationError("screening.provider_url is required for the http provider")
        if self.screening.provider_timeout_seconds <= 0:
            raise ConfigurationError("screening.provider_timeout_seconds must be positive")
        if self.screening.adverse_media_threshold < 0:
            raise ConfigurationError("screening.adverse_media_threshold cannot be negative")

        if self.kyc.reuse_window_days < 0 or self.kyc.review_window_days < 0:
            raise ConfigurationError("kyc windows cannot be negative")
        unknown = set(self.kyc.refresh_days) - {'LOW', 'MEDIUM', 'HIGH'}
        if unknown:
            raise ConfigurationError(f"kyc.refresh_days has unknown tiers: {sorted(unknown)}")
        if any(days < 0 for days in self.kyc.refresh_days.values()):
            raise ConfigurationError("kyc.refresh_days cannot be negative")

        if self.audit.queue_size < 1:
            raise ConfigurationError("audit.queue_size must be at least 1")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
