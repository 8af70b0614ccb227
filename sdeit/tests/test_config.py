# sdeit/tests/test_config.py
import pytest
from pydantic import ValidationError

from sdeit.config import ConfigurationError, Settings, load_settings


def test_defaults(clean_env):
    s = load_settings()
    assert s.base_exposure_rate == 0.062
    assert s.half_life_distance_meters == 1.0
    assert s.retention_horizon_days == 7
    assert s.initial_daily_tlot_increase_allowance == 1.0
    assert s.infection_risk_test_threshold is None
    assert s.config_origin == "defaults"


def test_env_overrides(clean_env):
    clean_env.setenv("SDEIT_TEST_THRESHOLD", "0.4")
    clean_env.setenv("SDEIT_RETENTION_DAYS", "14")
    clean_env.setenv("SDEIT_METRICS_ENABLE", "false")
    s = load_settings()
    assert s.infection_risk_test_threshold == 0.4
    assert s.retention_horizon_days == 14
    assert s.metrics_enable is False
    assert s.config_origin == "env"


def test_yaml_then_env(clean_env, tmp_path):
    path = tmp_path / "sdeit.yaml"
    path.write_text("infection_risk_test_threshold: 0.25\nscan_period_s: 5\n", encoding="utf-8")
    clean_env.setenv("SDEIT_CONFIG_PATH", str(path))
    s = load_settings()
    assert s.infection_risk_test_threshold == 0.25
    assert s.scan_period_s == 5.0
    assert s.config_origin == "yaml"

    clean_env.setenv("SDEIT_SCAN_PERIOD_S", "2")
    assert load_settings().scan_period_s == 2.0


def test_yaml_must_be_a_mapping(clean_env, tmp_path):
    path = tmp_path / "sdeit.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    clean_env.setenv("SDEIT_CONFIG_PATH", str(path))
    with pytest.raises(ConfigurationError):
        load_settings()


def test_missing_yaml_path_is_ignored(clean_env, tmp_path):
    clean_env.setenv("SDEIT_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    assert load_settings().config_origin == "defaults"


@pytest.mark.parametrize(
    "env_name, raw",
    [("SDEIT_TEST_THRESHOLD", "high"), ("SDEIT_RETENTION_DAYS", "7.5")],
)
def test_unparseable_env_value(clean_env, env_name, raw):
    clean_env.setenv(env_name, raw)
    with pytest.raises(ConfigurationError):
        load_settings()


@pytest.mark.parametrize(
    "overrides",
    [
        {"infection_risk_test_threshold": 0.0},
        {"infection_risk_test_threshold": 1.2},
        {"base_exposure_rate": -0.1},
        {"half_life_distance_meters": 0.0},
        {"retention_horizon_days": -1},
        {"scan_period_s": float("nan")},
        {"no_such_field": 1},
    ],
)
def test_invalid_values_raise_configuration_error(clean_env, overrides):
    with pytest.raises(ConfigurationError):
        load_settings(**overrides)


def test_require_engine_ready():
    with pytest.raises(ConfigurationError) as ei:
        Settings().require_engine_ready()
    assert "authority_public_key_hex" in str(ei.value)
    assert "infection_risk_test_threshold" in str(ei.value)
    Settings(authority_public_key_hex="00" * 32, infection_risk_test_threshold=0.5).require_engine_ready()


def test_config_hash_is_stable():
    a = Settings(infection_risk_test_threshold=0.5)
    b = Settings(infection_risk_test_threshold=0.5)
    c = Settings(infection_risk_test_threshold=0.6)
    assert a.config_hash() == b.config_hash()
    assert a.config_hash() != c.config_hash()
    assert len(a.config_hash()) == 64


def test_settings_are_frozen():
    s = Settings()
    with pytest.raises(ValidationError):
        s.debug = True


def test_settings_model_config():
    assert Settings.model_config["extra"] == "forbid"
    assert Settings.model_config["frozen"] is True
