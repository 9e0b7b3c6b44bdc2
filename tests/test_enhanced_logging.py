import pytest

from packages.monitoring.base.decimal_utils import (
    get_native_network_asset, get_network_token_decimals, to_token_units, truncate_token_amount
)
from packages.monitoring.base.enhanced_logging import (
    ErrorContextManager, classify_error, get_correlation_id, set_correlation_id
)
from packages.monitoring.base.metrics import MetricsRegistry, MonitorMetrics
from packages.monitoring.substrate import get_monitor_settings, get_substrate_node_url
from packages.monitoring.substrate.errors import DecodeError, EventShapeError, IdentityDecodeError


@pytest.mark.parametrize("error,category", [
    (ConnectionError("refused"), "connection_error"),
    (TimeoutError("slow"), "connection_error"),
    (DecodeError("bad"), "decode_error"),
    (IdentityDecodeError("bad utf-8"), "decode_error"),
    (EventShapeError("no weight"), "decode_error"),
    (ValueError("bad range"), "validation_error"),
    (RuntimeError("rpc request failed"), "substrate_error"),
    (BrokenPipeError("broken pipe"), "connection_error"),
    (KeyError("x"), "unknown_error"),
])
def test_classify_error(error, category):
    assert classify_error(error) == category


def test_operation_context_scopes_correlation_id():
    set_correlation_id(None)
    error_ctx = ErrorContextManager("test-service")

    with error_ctx.start_operation("aggregate_block", block_hash="0x01") as operation:
        assert get_correlation_id() == operation.correlation_id
        assert operation.correlation_id.startswith("req_")

    assert get_correlation_id() is None


def test_operation_context_does_not_swallow_errors():
    error_ctx = ErrorContextManager("test-service")

    with pytest.raises(ConnectionError):
        with error_ctx.start_operation("aggregate_block"):
            raise ConnectionError("closed")

    assert get_correlation_id() is None


def test_token_amounts():
    assert str(truncate_token_amount(5_999_000_000_000_000, 18, 3)) == "0.005"
    assert str(truncate_token_amount(12_345_678_900, 10, 3)) == "1.234"
    assert to_token_units(20 * 10 ** 18 + 1, 18) == 20
    assert get_network_token_decimals("Polkadot") == 10
    assert get_network_token_decimals("unknown") == 18
    assert get_native_network_asset("moonbeam") == "GLMR"
    with pytest.raises(ValueError):
        get_native_network_asset("unknown")


def test_monitor_metrics():
    registry = MetricsRegistry("substrate-moonbeam-block-monitor")
    metrics = MonitorMetrics(registry, "moonbeam", "range")

    metrics.record_block_aggregated(100, 3, 0.2)
    metrics.record_failed_aggregation("connection_error")
    metrics.record_cache_lookup("identity", hit=True, count=2)
    metrics.update_pending_pool_size(7)

    text = registry.get_metrics_text()
    assert 'monitor_blocks_aggregated_total{network="moonbeam",mode="range"} 1.0' in text
    assert 'monitor_current_block_number{network="moonbeam",mode="range"} 100.0' in text
    assert 'error_type="connection_error"' in text
    assert 'monitor_identity_cache_lookups_total{network="moonbeam",cache="identity",result="hit"} 2.0' in text
    assert 'monitor_pending_pool_size{network="moonbeam"} 7.0' in text


def test_monitor_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MOONRIVER_NODE_WS_URL", "ws://moonriver:9944")
    monkeypatch.setenv("MONITOR_CONCURRENCY", "12")
    monkeypatch.setenv("MONITOR_WEIGHT_PER_GAS", "30000")
    monkeypatch.delenv("MONITOR_TOKEN_DECIMALS", raising=False)

    settings = get_monitor_settings("moonriver")

    assert settings.node_ws_url == "ws://moonriver:9944"
    assert settings.concurrency == 12
    assert settings.weight_per_gas == 30000
    assert settings.token_decimals == 18


def test_node_url_required(monkeypatch):
    monkeypatch.delenv("POLKADOT_NODE_WS_URL", raising=False)

    with pytest.raises(ValueError):
        get_substrate_node_url("polkadot")
    with pytest.raises(ValueError):
        get_substrate_node_url("kusama")
