from pathlib import Path

import pytest

import sonar_prep.config as config_module
from sonar_prep.config import (
    ConfigFile,
    effective_config,
    load_config,
    resolve_config_path,
    write_default_config,
)
from sonar_prep.errors import CLIError


def test_resolve_config_path_uses_env(tmp_path):
    assert resolve_config_path() == tmp_path / "config" / "config.toml"


def test_resolve_config_path_defaults_to_platform_dirs(monkeypatch, tmp_path):
    monkeypatch.delenv("SONAR_PREP_CONFIG", raising=False)
    monkeypatch.setattr(config_module, "default_config_path", lambda: tmp_path / "default.toml")
    assert resolve_config_path() == tmp_path / "default.toml"


def test_load_config_missing_file_returns_defaults(tmp_path):
    assert load_config(tmp_path / "missing.toml") == ConfigFile()


def test_load_config_reads_known_keys(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        "\n".join(
            [
                'hostUrl = " https://sonar.example.com "',
                'organization = "acme"',
                'user_home = "~/sonar-cache"',
                "http_timeout = 30",
                "skipJreProvisioning = true",
                "verbose = false",
                'parallel = "4"',
                'unknown = "ignored"',
            ]
        ),
        encoding="utf-8",
    )
    assert load_config(path) == ConfigFile(
        host_url="https://sonar.example.com",
        organization="acme",
        user_home="~/sonar-cache",
        http_timeout=30.0,
        skip_jre_provisioning=True,
        verbose=False,
        parallel=4,
    )


def test_load_config_ignores_invalid_values(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('http_timeout = -1\nverbose = "yes"\nparallel = "many"\n', encoding="utf-8")
    loaded = load_config(path)
    assert loaded.http_timeout is None
    assert loaded.verbose is None
    assert loaded.parallel is None


def test_load_config_parse_error(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("host_url = [", encoding="utf-8")
    with pytest.raises(CLIError) as excinfo:
        load_config(path)
    assert "failed to parse config file" in str(excinfo.value)


def test_effective_config_defaults(monkeypatch):
    monkeypatch.delenv("SONAR_USER_HOME", raising=False)
    values, sources = effective_config(ConfigFile())
    assert values["host_url"] == "https://sonarcloud.io"
    assert values["http_timeout"] == 100.0
    assert values["parallel"] == 1
    assert values["user_home"] == str(Path.home() / ".sonar")
    assert set(sources.values()) == {"default"}


def test_effective_config_prefers_env_user_home(tmp_path):
    values, sources = effective_config(
        ConfigFile(host_url="https://sonar.example.com", user_home="/ignored", verbose=True)
    )
    assert values["user_home"] == str(tmp_path / "sonar-home")
    assert sources["user_home"] == "env"
    assert sources["host_url"] == "config"
    assert values["verbose"] is True
    assert sources["verbose"] == "config"


def test_write_default_config(tmp_path):
    path = tmp_path / "nested" / "config.toml"
    assert write_default_config(path, force=False) == path
    assert load_config(path) == ConfigFile()

    with pytest.raises(CLIError):
        write_default_config(path, force=False)

    path.write_text("verbose = true\n", encoding="utf-8")
    write_default_config(path, force=True)
    assert load_config(path).verbose is None
