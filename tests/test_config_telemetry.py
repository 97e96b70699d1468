from __future__ import annotations

from registry_discovery.core.config import Settings, get_settings
from registry_discovery.core.telemetry import current_trace_ids, parse_otlp_headers, setup_telemetry, shutdown_telemetry


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("RD_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RD_CHECKER_ENDPOINTS_JSON", '{"installTest": "https://checks/install"}')
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.queue_max_attempts == 5
    assert settings.checker_endpoints_json == '{"installTest": "https://checks/install"}'
    assert settings.poll_interval_ms == 2000
    assert settings.stale_processing_threshold_ms == 600_000
    assert settings.duplicate_confidence_threshold == 0.9


def test_parse_headers_skips_malformed_pairs() -> None:
    assert parse_otlp_headers("authorization=Bearer abc, x-team = registry,broken,=empty") == {
        "authorization": "Bearer abc",
        "x-team": "registry",
    }
    assert parse_otlp_headers(None) == {}


def test_disabled_telemetry_is_a_no_op() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), service_suffix="worker")

    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_trace_ids_are_zeroed_outside_a_span() -> None:
    assert current_trace_ids() == ("0" * 32, "0" * 16)
