"""Tests for configuration loading."""

import pytest

from batch_imagegen.config import ConfigManager


ENV_VARS = [
    "IMAGEGEN_API_KEY", "OPENAI_API_KEY", "IMAGEGEN_BASE_URL", "IMAGEGEN_TIMEOUT",
    "IMAGEGEN_DISABLE_SSL_VERIFY", "IMAGEGEN_MODEL", "IMAGEGEN_MODEL_FAMILY", "IMAGEGEN_CONCURRENCY",
    "IMAGEGEN_RETRY_ATTEMPTS", "OUTPUT_DIR", "DOWNLOAD_MAX_CONCURRENT", "DOWNLOAD_DISABLE_SSL_VERIFY",
    "REDIS_HOST", "REDIS_PORT", "REDIS_PASSWORD", "REDIS_USERNAME", "REDIS_DB", "LOG_LEVEL",
    "IMAGEGEN_STORE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_config_file():
    config = ConfigManager().get_config()
    assert config.api.api_key is None
    assert config.scheduler.concurrent_limit == 3
    assert config.download.filename_template == "{task}_{index}_{timestamp}"
    assert config.redis.port == 6379
    assert config.store == "redis"


def test_sample_config_loads_with_placeholders_ignored(tmp_path):
    path = tmp_path / "sample.ini"
    ConfigManager(str(path)).create_sample_config(str(path))

    config = ConfigManager(str(path)).get_config()
    assert config.api.api_key is None
    assert config.redis.password is None
    assert config.scheduler.call_timeout is None
    assert config.scheduler.model_family == "dalle"
    assert config.download.filename_template == "{task}_{index}_{timestamp}"


def test_file_values_are_read(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(
        "[api]\napi_key = secret\nbase_url = https://images.example\n"
        "[scheduler]\nconcurrent_limit = 5\nretry_delay_ms = 250\n"
        "[download]\nfilename_template = {date}_{task}\norganize_by_date = false\n"
        "[app]\nstore = memory\n"
    )

    config = ConfigManager().get_config()
    assert config.api.api_key == "secret"
    assert config.api.base_url == "https://images.example"
    assert config.scheduler.concurrent_limit == 5
    assert config.scheduler.retry_delay_ms == 250
    assert config.download.filename_template == "{date}_{task}"
    assert config.download.organize_by_date is False
    assert config.store == "memory"


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.ini"
    path.write_text("[redis]\nhost = file-host\nport = 6380\n")
    monkeypatch.setenv("REDIS_HOST", "env-host")
    monkeypatch.setenv("IMAGEGEN_API_KEY", "env-key")
    monkeypatch.setenv("DOWNLOAD_DISABLE_SSL_VERIFY", "yes")

    config = ConfigManager(str(path)).get_config()
    assert config.redis.host == "env-host"
    assert config.redis.port == 6380
    assert config.api.api_key == "env-key"
    assert config.download.disable_ssl_verify is True


def test_cli_arguments_override_everything():
    manager = ConfigManager()
    manager.update_from_cli_args(redis_host="cli-host", output_dir="/tmp/out", disable_ssl_verify=True,
                                 log_level=None)

    config = manager.get_config()
    assert config.redis.host == "cli-host"
    assert config.download.output_dir == "/tmp/out"
    assert config.api.disable_ssl_verify is True
    assert config.download.disable_ssl_verify is True
    assert config.log_level == "INFO"
