"""Tests for settings loading and interval parsing."""

import pytest

from macro.config import (
    ConfigError,
    Settings,
    get_config_path,
    load_config,
    parse_interval,
)


class TestParseInterval:
    """Tests for parse_interval."""

    def test_milliseconds_suffix(self):
        assert parse_interval("500ms") == 500

    def test_seconds_suffix(self):
        assert parse_interval("2s") == 2000

    def test_bare_string_is_minutes(self):
        assert parse_interval("3") == 180000

    def test_number_is_minutes(self):
        assert parse_interval(5) == 300000
        assert parse_interval(1.5) == 90000

    def test_whitespace_and_case(self):
        assert parse_interval(" 10 S ") == 10000

    def test_explicit_plus_sign(self):
        assert parse_interval("+2s") == 2000

    def test_malformed_string_raises(self):
        with pytest.raises(ConfigError, match="malformed interval"):
            parse_interval("abc")

    @pytest.mark.parametrize("value", ["5m", "--5", "1h", "ms"])
    def test_other_malformed_strings(self, value):
        with pytest.raises(ConfigError):
            parse_interval(value)

    @pytest.mark.parametrize(
        "value",
        [None, "", "off", "disabled", False, 0, -3, "0", "0ms", "-5", "-2s", " -500ms ", {"disabled": True}],
    )
    def test_disabled_values(self, value):
        """Disabled sentinels and non-positive values leave the job unarmed."""
        assert parse_interval(value) is None

    def test_bool_true_rejected(self):
        with pytest.raises(ConfigError):
            parse_interval(True)

    def test_unknown_mapping_rejected(self):
        with pytest.raises(ConfigError):
            parse_interval({"every": 5})


class TestSettings:
    """Tests for Settings.from_dict."""

    def test_defaults(self):
        settings = Settings.from_dict({})

        assert settings.mode.check == ""
        assert settings.mode.actions == {}
        assert settings.mode.interval_ms is None
        assert settings.mode.history_size == 100
        assert settings.periodical.log_size == 100
        assert settings.script_timeout_s == 60.0

    def test_full_settings(self):
        settings = Settings.from_dict({
            "script_timeout": "5s",
            "mode": {
                "check": "resolve('home')",
                "actions": {"away": "resolve('ok')"},
                "interval": "30s",
                "log_result": False,
                "history_size": 10,
            },
            "periodical": {"script": "end()", "interval": 10, "log_size": 20},
            "poll": {"script": "x = 1", "interval": "500ms"},
            "macros": {"hello": "resolve('hi')"},
        })

        assert settings.mode.actions == {"away": "resolve('ok')"}
        assert settings.mode.interval_ms == 30000
        assert settings.mode.log_result is False
        assert settings.mode.history_size == 10
        assert settings.periodical.interval_ms == 600000
        assert settings.periodical.log_size == 20
        assert settings.poll.interval_ms == 500
        assert settings.macros == {"hello": "resolve('hi')"}
        assert settings.script_timeout_s == 5.0

    def test_timeout_can_be_disabled(self):
        assert Settings.from_dict({"script_timeout": None}).script_timeout_s is None

    def test_malformed_interval_fails_at_load(self):
        with pytest.raises(ConfigError):
            Settings.from_dict({"poll": {"interval": "every minute"}})

    @pytest.mark.parametrize("size", [0, -1, "10", True])
    def test_invalid_history_size(self, size):
        with pytest.raises(ConfigError, match="history_size"):
            Settings.from_dict({"mode": {"history_size": size}})

    def test_actions_must_be_mapping(self):
        with pytest.raises(ConfigError, match="mode.actions"):
            Settings.from_dict({"mode": {"actions": ["resolve(1)"]}})

    def test_script_must_be_text(self):
        with pytest.raises(ConfigError, match="periodical.script"):
            Settings.from_dict({"periodical": {"script": 42}})

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ConfigError):
            Settings.from_dict(["mode"])


class TestLoadConfig:
    """Tests for load_config and get_config_path."""

    def test_explicit_path_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MACRO_CONFIG", "/elsewhere.yaml")
        assert get_config_path(str(tmp_path / "c.yaml")) == tmp_path / "c.yaml"

    def test_env_path(self, monkeypatch):
        monkeypatch.setenv("MACRO_CONFIG", "/etc/macro.yaml")
        assert str(get_config_path()) == "/etc/macro.yaml"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("mode: [unclosed\n")

        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(str(path))

    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "mode:\n"
            "  check: \"resolve('home')\"\n"
            "  interval: 5\n"
            "  actions:\n"
            "    away: \"resolve('ok')\"\n"
        )

        settings = load_config(str(path))

        assert settings.mode.interval_ms == 300000
        assert "away" in settings.mode.actions
