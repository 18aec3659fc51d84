import pytest

from kbtrack.config import (
    DATA_DIR_ENV,
    DEFAULT_DATA_DIR,
    TrackerConfig,
    get_data_dir,
    load_config,
    save_config,
)
from kbtrack.exceptions import ConfigError


def test_defaults():
    config = TrackerConfig()

    assert config.start_threshold == 85
    assert config.stop_threshold == 5
    assert config.charge_tolerance == 7
    assert config.offline_drop_tolerance == 5
    assert config.failure_grace_cycles == 5
    assert config.accrual_confidence_threshold == 0.5


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(tmp_path / "config.yaml") == TrackerConfig()


def test_save_and_load(tmp_path):
    path = tmp_path / "config.yaml"
    config = TrackerConfig(start_threshold=90, device_address="AA:BB:CC:DD:EE:FF", device_names=("Halo",))

    save_config(path, config)

    assert load_config(path) == config


def test_unknown_keys_are_ignored(tmp_path, caplog):
    path = tmp_path / "config.yaml"
    path.write_text("stop_threshold: 10\ncolour: blue\n", encoding="utf-8")

    config = load_config(path)

    assert config.stop_threshold == 10
    assert "colour" in caplog.text


def test_single_device_name_becomes_tuple():
    assert TrackerConfig.from_mapping({"device_names": "Air75"}).device_names == ("Air75",)


@pytest.mark.parametrize(
    "text",
    [
        "start_threshold: 120\n",
        "stop_threshold: 90\n",
        "charge_tolerance: -1\n",
        "accrual_confidence_threshold: 1.5\n",
        "sample_retention: 0\n",
        "connection_timeout: 0\n",
        "start_threshold: high\n",
        "- just\n- a list\n",
        "start_threshold: [unclosed\n",
    ],
)
def test_invalid_config_raises(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(path)


def test_data_dir_resolution(monkeypatch, tmp_path):
    monkeypatch.delenv(DATA_DIR_ENV, raising=False)
    assert get_data_dir() == DEFAULT_DATA_DIR

    monkeypatch.setenv(DATA_DIR_ENV, str(tmp_path / "env"))
    assert get_data_dir() == tmp_path / "env"
    assert get_data_dir(tmp_path / "explicit") == tmp_path / "explicit"


def test_device_address_is_optional(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("device_address: null\n", encoding="utf-8")

    assert load_config(path).device_address is None
    assert TrackerConfig(device_address="AA:BB").device_address == "AA:BB"
