import sys

sys.path.insert(0, '.')

from datetime import time as dtime

import pytest

from config.config_loader import Config
from config.risk_config import DEFAULT_TIERS, RiskConfig, TrailingTier, load_risk_config
from risk.errors import FatalConfigError


def test_bundled_config_loads():
    cfg = load_risk_config()
    assert cfg.sl_pct == 30.0
    assert cfg.session_exit_at == dtime(15, 15)
    assert cfg.time_exit_at == dtime(15, 20)
    assert cfg.trailing_tier_table == DEFAULT_TIERS
    assert cfg.tz.key == 'Asia/Kolkata'


@pytest.mark.parametrize("missing", ['sl_pct', 'tp_pct'])
def test_missing_required_key_is_fatal(missing):
    raw = {'sl_pct': 30, 'tp_pct': 60}
    raw.pop(missing)
    with pytest.raises(FatalConfigError):
        RiskConfig.from_mapping(raw)


@pytest.mark.parametrize("raw", [
    {'sl_pct': 30, 'tp_pct': 60, 'unknown_knob': 1},
    {'sl_pct': 'lots', 'tp_pct': 60},
    {'sl_pct': 30, 'tp_pct': 60, 'cycle_interval_active': 0},
    {'sl_pct': 30, 'tp_pct': 60, 'timezone': 'Mars/Olympus'},
    {'sl_pct': 30, 'tp_pct': 60, 'session_exit_at': '3pm'},
    {'sl_pct': 30, 'tp_pct': 60, 'trailing_tier_table': [[10, 0], [10, 5]]},
])
def test_invalid_values_are_fatal(raw):
    with pytest.raises(FatalConfigError):
        RiskConfig.from_mapping(raw)


@pytest.mark.parametrize("value,expected", [
    ("15:20", dtime(15, 20)),
    ("09:15:30", dtime(9, 15, 30)),
    (920, dtime(15, 20)),
])
def test_time_parsing(value, expected):
    cfg = RiskConfig.from_mapping({'sl_pct': 30, 'tp_pct': 60, 'time_exit_at': value})
    assert cfg.time_exit_at == expected


@pytest.mark.parametrize("table", [
    [[25, 10], [5, -15]],
    [{'threshold_pct': 5, 'sl_offset_pct': -15}, {'threshold_pct': 25, 'sl_offset_pct': 10}],
    {5: -15, 25: 10},
])
def test_tier_table_shapes(table):
    cfg = RiskConfig.from_mapping({'sl_pct': 30, 'tp_pct': 60, 'trailing_tier_table': table})
    assert cfg.trailing_tier_table == (TrailingTier(5.0, -15.0), TrailingTier(25.0, 10.0))


def test_optional_values_and_flags():
    cfg = RiskConfig.from_mapping({
        'sl_pct': None,
        'tp_pct': 60,
        'trailing_pre_exit': 'yes',
        'disabled_rules': 'secure_profit',
    })
    assert cfg.sl_pct is None
    assert cfg.trailing_pre_exit is True
    assert not cfg.rule_enabled('secure_profit')
    assert cfg.rule_enabled('stop_loss')


def test_env_substitution(monkeypatch):
    monkeypatch.setenv('RISK_TEST_URL', 'wss://feed.test/ws')
    cfg = Config.from_dict({'feed': {'url': '${RISK_TEST_URL}', 'fallback': '${RISK_TEST_UNSET:-none}'}})
    assert cfg.feed.url == 'wss://feed.test/ws'
    assert cfg.section('feed')['fallback'] == 'none'
    assert cfg.section('missing') == {}
