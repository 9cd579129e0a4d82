"""Configuration management for the batch image generator."""

import os
import configparser
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

from loguru import logger

from .filenames import DEFAULT_TEMPLATE
from .models import ModelFamily


_TRUE_VALUES = ('true', '1', 'yes', 'on')


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in _TRUE_VALUES


def _drop_placeholders(parser: configparser.ConfigParser) -> None:
    """Remove sample-file settings still commented out with a leading #."""
    for section in parser.sections():
        for key, value in list(parser.items(section)):
            if value.strip().startswith("#"):
                parser.remove_option(section, key)


@dataclass
class ApiConfig:
    """Image generation API settings."""
    base_url: str = "https://api.openai.com"
    api_key: Optional[str] = None
    timeout: float = 300.0
    disable_ssl_verify: bool = False


@dataclass
class SchedulerConfig:
    """Defaults for new batch tasks."""
    model: str = "dall-e-3"
    model_family: str = ModelFamily.DALLE.value
    concurrent_limit: int = 3
    retry_attempts: int = 2
    retry_delay_ms: int = 1000
    call_timeout: Optional[float] = None
    auto_download: bool = True


@dataclass
class DownloadConfig:
    """Download queue settings."""
    output_dir: str = "downloads"
    filename_template: str = DEFAULT_TEMPLATE
    organize_by_date: bool = True
    organize_by_task: bool = True
    max_concurrent: int = 3
    retry_attempts: int = 2
    retry_backoff_ms: int = 300
    timeout: float = 60.0
    disable_ssl_verify: bool = False


@dataclass
class RedisConfig:
    """Redis configuration settings."""
    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    username: Optional[str] = None
    db: int = 0
    key_prefix: str = "imagegen"


@dataclass
class AppConfig:
    """Application configuration."""
    api: ApiConfig = field(default_factory=ApiConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    log_level: str = "INFO"
    store: str = "redis"


class ConfigManager:
    """Manages configuration from files, environment variables, and CLI args."""

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration manager."""
        self.config_file = config_file or self._find_config_file()
        self.config = self._load_config()

    def _find_config_file(self) -> Optional[str]:
        """Find configuration file in standard locations."""
        possible_paths = [
            "config.ini",
            "imagegen_batch.ini",
            "~/.config/imagegen_batch/config.ini",
            "~/.imagegen_batch.ini",
            "/etc/imagegen_batch/config.ini"
        ]

        for path_str in possible_paths:
            path = Path(path_str).expanduser()
            if path.exists():
                logger.info(f"Found config file: {path}")
                return str(path)

        logger.info("No config file found, using defaults")
        return None

    def _load_config(self) -> AppConfig:
        """Load configuration from file and environment variables."""
        config = AppConfig()

        if self.config_file and Path(self.config_file).exists():
            parser = configparser.ConfigParser(interpolation=None)
            try:
                parser.read(self.config_file)
                _drop_placeholders(parser)
                self._apply_file(parser, config)
                logger.info(f"Loaded configuration from {self.config_file}")
            except (configparser.Error, ValueError) as e:
                logger.warning(f"Error reading config file {self.config_file}: {e}")

        self._apply_env(config)
        return config

    def _apply_file(self, parser: configparser.ConfigParser, config: AppConfig) -> None:
        if "api" in parser:
            section = parser["api"]
            config.api.base_url = section.get("base_url", config.api.base_url)
            config.api.api_key = section.get("api_key", config.api.api_key)
            config.api.timeout = section.getfloat("timeout", config.api.timeout)
            config.api.disable_ssl_verify = section.getboolean("disable_ssl_verify", config.api.disable_ssl_verify)

        if "scheduler" in parser:
            section = parser["scheduler"]
            config.scheduler.model = section.get("model", config.scheduler.model)
            config.scheduler.model_family = section.get("model_family", config.scheduler.model_family)
            config.scheduler.concurrent_limit = section.getint("concurrent_limit", config.scheduler.concurrent_limit)
            config.scheduler.retry_attempts = section.getint("retry_attempts", config.scheduler.retry_attempts)
            config.scheduler.retry_delay_ms = section.getint("retry_delay_ms", config.scheduler.retry_delay_ms)
            config.scheduler.call_timeout = section.getfloat("call_timeout", config.scheduler.call_timeout)
            config.scheduler.auto_download = section.getboolean("auto_download", config.scheduler.auto_download)

        if "download" in parser:
            section = parser["download"]
            config.download.output_dir = section.get("output_dir", config.download.output_dir)
            config.download.filename_template = section.get("filename_template", config.download.filename_template)
            config.download.organize_by_date = section.getboolean("organize_by_date", config.download.organize_by_date)
            config.download.organize_by_task = section.getboolean("organize_by_task", config.download.organize_by_task)
            config.download.max_concurrent = section.getint("max_concurrent", config.download.max_concurrent)
            config.download.retry_attempts = section.getint("retry_attempts", config.download.retry_attempts)
            config.download.retry_backoff_ms = section.getint("retry_backoff_ms", config.download.retry_backoff_ms)
            config.download.timeout = section.getfloat("timeout", config.download.timeout)
            config.download.disable_ssl_verify = section.getboolean("disable_ssl_verify",
                                                                    config.download.disable_ssl_verify)

        if "redis" in parser:
            section = parser["redis"]
            config.redis.host = section.get("host", config.redis.host)
            config.redis.port = section.getint("port", config.redis.port)
            config.redis.password = section.get("password", config.redis.password)
            config.redis.username = section.get("username", config.redis.username)
            config.redis.db = section.getint("db", config.redis.db)
            config.redis.key_prefix = section.get("key_prefix", config.redis.key_prefix)

        if "app" in parser:
            section = parser["app"]
            config.log_level = section.get("log_level", config.log_level)
            config.store = section.get("store", config.store)

    def _apply_env(self, config: AppConfig) -> None:
        # API settings from environment
        config.api.api_key = os.getenv("IMAGEGEN_API_KEY") or os.getenv("OPENAI_API_KEY") or config.api.api_key
        config.api.base_url = os.getenv("IMAGEGEN_BASE_URL", config.api.base_url)
        config.api.timeout = float(os.getenv("IMAGEGEN_TIMEOUT", config.api.timeout))
        config.api.disable_ssl_verify = _env_bool("IMAGEGEN_DISABLE_SSL_VERIFY", config.api.disable_ssl_verify)

        # Task defaults from environment
        config.scheduler.model = os.getenv("IMAGEGEN_MODEL", config.scheduler.model)
        config.scheduler.model_family = os.getenv("IMAGEGEN_MODEL_FAMILY", config.scheduler.model_family)
        config.scheduler.concurrent_limit = int(os.getenv("IMAGEGEN_CONCURRENCY", config.scheduler.concurrent_limit))
        config.scheduler.retry_attempts = int(os.getenv("IMAGEGEN_RETRY_ATTEMPTS", config.scheduler.retry_attempts))

        # Download settings from environment
        config.download.output_dir = os.getenv("OUTPUT_DIR", config.download.output_dir)
        config.download.max_concurrent = int(os.getenv("DOWNLOAD_MAX_CONCURRENT", config.download.max_concurrent))
        config.download.disable_ssl_verify = _env_bool("DOWNLOAD_DISABLE_SSL_VERIFY",
                                                       config.download.disable_ssl_verify)

        config.redis.host = os.getenv("REDIS_HOST", config.redis.host)
        config.redis.port = int(os.getenv("REDIS_PORT", config.redis.port))
        config.redis.password = os.getenv("REDIS_PASSWORD", config.redis.password)
        config.redis.username = os.getenv("REDIS_USERNAME", config.redis.username)
        config.redis.db = int(os.getenv("REDIS_DB", config.redis.db))

        config.log_level = os.getenv("LOG_LEVEL", config.log_level)
        config.store = os.getenv("IMAGEGEN_STORE", config.store)

    def get_config(self) -> AppConfig:
        """Get the current configuration."""
        return self.config

    def update_from_cli_args(self, **kwargs):
        """Update configuration with CLI arguments."""
        for key, value in kwargs.items():
            if value is None:
                continue
            if key in ["redis_host", "redis_port", "redis_password", "redis_username"]:
                setattr(self.config.redis, key.replace("redis_", ""), value)
            elif key in ["api_key", "base_url"]:
                setattr(self.config.api, key, value)
            elif key == "disable_ssl_verify":
                self.config.api.disable_ssl_verify = value
                self.config.download.disable_ssl_verify = value
            elif key == "output_dir":
                self.config.download.output_dir = value
            elif key == "log_level":
                self.config.log_level = value
            elif key == "store":
                self.config.store = value

    def create_sample_config(self, file_path: str):
        """Create a sample configuration file."""
        config = configparser.ConfigParser(interpolation=None)

        config["api"] = {
            "base_url": "https://api.openai.com",
            "api_key": "# your_api_key",
            "timeout": "300",
            "disable_ssl_verify": "# false (set to true to disable SSL verification)"
        }

        config["scheduler"] = {
            "model": "dall-e-3",
            "model_family": "dalle",
            "concurrent_limit": "3",
            "retry_attempts": "2",
            "retry_delay_ms": "1000",
            "call_timeout": "# 120 (seconds per generation call, optional)",
            "auto_download": "true"
        }

        config["download"] = {
            "output_dir": "downloads",
            "filename_template": DEFAULT_TEMPLATE,
            "organize_by_date": "true",
            "organize_by_task": "true",
            "max_concurrent": "3",
            "retry_attempts": "2",
            "retry_backoff_ms": "300"
        }

        config["redis"] = {
            "host": "localhost",
            "port": "6379",
            "password": "# your_redis_password",
            "username": "# your_redis_username (Redis 6.0+ ACL)",
            "db": "0",
            "key_prefix": "imagegen"
        }

        config["app"] = {
            "log_level": "INFO",
            "store": "redis"
        }

        with open(file_path, 'w') as f:
            f.write("# Batch Image Generator Configuration\n")
            f.write("# Lines starting with # are comments\n")
            f.write("# Remove the # to uncomment settings\n\n")
            config.write(f)

        logger.info(f"Created sample config file: {file_path}")


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_file: Optional[str] = None) -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_file)
    return _config_manager


def get_config(config_file: Optional[str] = None) -> AppConfig:
    """Get the current configuration."""
    return get_config_manager(config_file).get_config()
