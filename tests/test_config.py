import argparse
import json

import pytest

import constants
from config import AppConfig, collect_rpc_candidates, load_config, load_registry, resolve_tracked

ENV = {}


# Mock the os.environ.get to control environment variables during tests
def mock_environ_get(key, default=None):
    return ENV.get(key, default)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch):
    ENV.clear()
    monkeypatch.setattr('os.environ.get', mock_environ_get)


def make_args(**overrides):
    values = dict(
        token=['weth', 'LINK'],
        venue=['quickswap', 'uniswap_v3'],
        registry=None,
        notional=1000.0,
        min_spread_bps=20.0,
        interval=60,
        rpc_timeout=10.0,
        min_liquidity=1000.0,
        alert_cooldown=300,
        top_n=3,
        batch_size=3,
        batch_pause=1.0,
        venue_concurrency=2,
        min_fetch_success_rate=0.3,
        pool_size=5,
        probe_timeout=5.0,
        cache_ttl=30.0,
        cl_liquidity_scale=1.0,
        confidence_threshold=0.4,
        min_profit=3.0,
        min_roi=0.3,
        dedup_path='data/notifications.json',
        log_file=None,
        log_level='INFO',
        telegram_enabled=False,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def patch_args(monkeypatch, **overrides):
    monkeypatch.setattr('argparse.ArgumentParser.parse_args', lambda self: make_args(**overrides))


def test_load_config_maps_arguments(monkeypatch):
    patch_args(monkeypatch, min_roi=0.5, cl_liquidity_scale=0.25)

    config = load_config()

    assert isinstance(config, AppConfig)
    assert config.tokens == ['WETH', 'LINK']
    assert config.venues == ['quickswap', 'uniswap_v3']
    assert config.min_roi_pct == 0.5
    assert config.cl_liquidity_scale == 0.25
    assert config.telegram_enabled is False
    assert config.telegram_bot_token is None
    assert config.rpc_candidates == constants.PUBLIC_RPC_ENDPOINTS


def test_load_config_reads_telegram_credentials(monkeypatch):
    ENV[constants.TELEGRAM_BOT_TOKEN_ENV_VAR] = 'mock_token'
    ENV[constants.TELEGRAM_CHAT_ID_ENV_VAR] = '-1001'
    ENV[constants.COINGECKO_API_KEY_ENV_VAR] = 'cg-key'
    patch_args(monkeypatch, telegram_enabled=True)

    config = load_config()

    assert config.telegram_enabled is True
    assert config.telegram_bot_token == 'mock_token'
    assert config.telegram_chat_id == '-1001'
    assert config.coingecko_api_key == 'cg-key'


def test_telegram_enabled_without_credentials_exits(monkeypatch):
    ENV[constants.TELEGRAM_BOT_TOKEN_ENV_VAR] = 'mock_token'
    patch_args(monkeypatch, telegram_enabled=True)

    with pytest.raises(SystemExit):
        load_config()


def test_non_positive_notional_is_rejected(monkeypatch):
    patch_args(monkeypatch, notional=0.0)

    with pytest.raises(SystemExit) as excinfo:
        load_config()
    assert excinfo.value.code == 2


def test_rpc_candidates_prefer_configured_endpoints():
    ENV['POLYGON_RPC_1'] = 'https://my-node.example'
    ENV['POLYGON_RPC_3'] = constants.PUBLIC_RPC_ENDPOINTS[0]
    ENV[constants.ALCHEMY_API_KEY_ENV_VAR] = 'abc123'

    candidates = collect_rpc_candidates()

    assert candidates[0] == 'https://my-node.example'
    assert candidates[1] == constants.PUBLIC_RPC_ENDPOINTS[0]
    assert candidates[2] == 'https://polygon-mainnet.g.alchemy.com/v2/abc123'
    assert len(candidates) == len(set(candidates))
    assert set(constants.PUBLIC_RPC_ENDPOINTS) <= set(candidates)


def test_builtin_registry():
    registry = load_registry()

    assert registry.settlement_token == 'USDC'
    assert registry.tokens['USDC'].is_stable is True
    assert registry.tokens['WBTC'].decimals == 8
    assert registry.venues['uniswap_v3'].is_concentrated
    assert registry.venues['uniswap_v3'].fee_tiers == (3000, 500, 10000)
    assert not registry.venues['quickswap'].is_concentrated
    assert registry.bridge_tokens == constants.BRIDGE_TOKENS


def test_registry_overlay_adds_tokens_and_venues(tmp_path):
    path = tmp_path / 'registry.json'
    path.write_text(json.dumps({
        'tokens': {'ghst': {'address': '0x385EEeD5e7E5d1E2Cc4eC9D4aA05C6bE9d1d1c7A', 'decimals': 18}},
        'venues': {
            'dfyn': {
                'family': 'constant_product',
                'factory': '0xE7Fb3e833eFE5F9c441105EB65Ef8b261266423B',
            },
        },
        'bridge_tokens': ['usdc', 'weth'],
    }))

    registry = load_registry(str(path))

    assert registry.tokens['GHST'].address == '0x385eeed5e7e5d1e2cc4ec9d4aa05c6be9d1d1c7a'
    assert registry.venues['dfyn'].fee_tiers == (3000,)
    assert registry.venues['dfyn'].factory == '0xe7fb3e833efe5f9c441105eb65ef8b261266423b'
    assert registry.bridge_tokens == ['USDC', 'WETH']
    assert 'quickswap' in registry.venues


@pytest.mark.parametrize('overlay', [
    {'venues': {'bad': {'family': 'orderbook', 'factory': '0x' + '1' * 40}}},
    {'venues': {'bad': {'family': 'constant_product'}}},
    {'tokens': {'BAD': {'address': '0x1234', 'decimals': 18}}},
    {'settlement_token': 'EURS'},
    ['not', 'an', 'object'],
])
def test_registry_overlay_rejects_invalid_entries(tmp_path, overlay):
    path = tmp_path / 'registry.json'
    path.write_text(json.dumps(overlay))

    with pytest.raises(ValueError):
        load_registry(str(path))


def test_resolve_tracked_skips_unknown_names(monkeypatch):
    patch_args(monkeypatch, token=['WETH', 'NOPE'], venue=['quickswap', 'sushiswap', 'pancake'])
    config = load_config()

    tokens, venues = resolve_tracked(config, load_registry())

    assert [token.symbol for token in tokens] == ['WETH']
    assert [venue.name for venue in venues] == ['quickswap', 'sushiswap']


def test_resolve_tracked_needs_two_venues(monkeypatch):
    patch_args(monkeypatch, venue=['quickswap'])
    config = load_config()

    with pytest.raises(SystemExit):
        resolve_tracked(config, load_registry())
