from pathlib import Path

import pytest

from marionette_automation.config import MarionetteConfig, load_config
from marionette_automation.errors import ConfigError


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    assert isinstance(config, MarionetteConfig)
    assert config.forks == 5
    assert config.retries == 3
    assert config.host_key_checking is True
    assert config.allow_plaintext_secrets is False
    assert config.env_prefix == "MARIONETTE_VAR_"


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [defaults]
        inventory = "/opt/marionette/inventory.yml"
        template_dir = "/opt/marionette/templates"
        forks = 12
        connect_timeout = 4
        retries = 1
        any_errors_fatal = true
        host_key_checking = false
        aws_region = "ap-southeast-2"
        aws_profile = "myprofile"
        """
    )

    config = load_config(cfg_path)
    assert config.inventory == Path("/opt/marionette/inventory.yml")
    assert config.template_dir == Path("/opt/marionette/templates")
    assert config.forks == 12
    assert config.connect_timeout == 4.0
    assert config.retries == 1
    assert config.any_errors_fatal is True
    assert config.host_key_checking is False
    assert config.aws_region == "ap-southeast-2"
    assert config.aws_profile == "myprofile"


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text("[defaults\nforks = 2\n")

    with pytest.raises(ConfigError):
        load_config(cfg_path)


def test_forks_must_be_positive(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text("[defaults]\nforks = 0\n")

    with pytest.raises(ConfigError, match="forks"):
        load_config(cfg_path)
