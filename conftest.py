"""
Root conftest — isolate credential and config-path environment variables so
that Settings tests are not affected by a real token in the developer's or
CI environment.
"""
import pytest

_SHARDLINE_ENV_VARS = [
    "SHARDLINE_TOKEN",
    "SHARDLINE_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_shardline_env(monkeypatch):
    """Remove shardline env vars for every test so Settings() behaves as if
    no token is present unless the test explicitly provides one.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _SHARDLINE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import shardline.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
