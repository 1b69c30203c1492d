import json

import pytest

from fakes import BASELINE_BODY, FakeExecutor, make_fingerprint
from pivot.base.config import DeltaConfig, PivotConfig
from pivot.base.errors import BaselineCaptureFailedError
from pivot.contracts.models import BaselineStatistics, HeaderChange, ResponseDelta
from pivot.diff import (
    BaselineManager,
    calculate_delta,
    change_kinds,
    change_summary,
    compute_statistics,
    has_any_change,
    relative_length_change,
    token_similarity,
)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def test_identical_samples_have_zero_deviation():
    stats = compute_statistics([make_fingerprint(timing=120.0)] * 5)
    assert stats.std_dev_response_time == 0.0
    assert stats.std_dev_body_length == 0.0
    assert stats.mean_response_time == 120.0
    assert stats.sample_count == 5


def test_statistics_use_population_deviation_over_all_timings():
    samples = [make_fingerprint(timing=t) for t in (90.0, 110.0)]
    stats = compute_statistics(samples)
    assert stats.mean_response_time == pytest.approx(100.0)
    assert stats.std_dev_response_time == pytest.approx(10.0)


def test_status_and_error_class_only_kept_when_unanimous():
    agree = compute_statistics([make_fingerprint(status=404, error_class="CLIENT_ERROR_404")] * 2)
    assert agree.status_code == 404
    assert agree.error_class == "CLIENT_ERROR_404"

    mixed = compute_statistics([make_fingerprint(status=404, error_class="CLIENT_ERROR_404"), make_fingerprint()])
    assert mixed.status_code == 200
    assert mixed.error_class is None


def test_common_headers_require_identical_values():
    stats = compute_statistics([
        make_fingerprint(headers={"server": "nginx", "etag": "a"}),
        make_fingerprint(headers={"server": "nginx", "etag": "b"}),
    ])
    assert stats.common_headers == {"server": "nginx"}


def test_compute_statistics_rejects_empty_input():
    with pytest.raises(ValueError):
        compute_statistics([])


# ---------------------------------------------------------------------------
# Delta
# ---------------------------------------------------------------------------


def test_token_similarity_edges():
    assert token_similarity("same text", "same text") == 1.0
    assert token_similarity("", "something") == 0.0
    assert token_similarity("a b c", "a b d") == pytest.approx(0.5)
    assert token_similarity("Hello, World", "hello world") == 1.0


def test_relative_length_change():
    assert relative_length_change(0, 0) == 0.0
    assert relative_length_change(0, 5) == 1.0
    assert relative_length_change(100, 150) == pytest.approx(0.5)


def test_identical_responses_have_no_change():
    fp = make_fingerprint()
    delta = calculate_delta(fp, fp)
    assert not has_any_change(delta)
    assert change_kinds(delta) == []
    assert change_summary(delta) == "no_change"
    assert delta.raw_body_similarity == 1.0


def test_delta_flags_status_error_and_reflection():
    baseline = make_fingerprint()
    current = make_fingerprint(body="SQL error near 'UNION SELECT'", status=500, error_class="SQL_ERROR")
    delta = calculate_delta(baseline, current, mutation_payload="union select")

    assert delta.status_changed
    assert delta.error_class_changed
    assert delta.body_hash_changed
    assert delta.body_contains_target
    assert delta.raw_body_similarity < 0.5
    assert has_any_change(delta)
    assert change_summary(delta).startswith("status, error_class, body_hash")


def test_timing_delta_in_standard_deviations():
    samples = [make_fingerprint(timing=t) for t in (90.0, 110.0)]
    stats = compute_statistics(samples)
    delta = calculate_delta(stats.sample_fingerprint, make_fingerprint(timing=130.0), stats)
    assert delta.timing_delta_std == pytest.approx(3.0)
    assert "timing" in change_kinds(delta)


def test_timing_ignored_without_deviation():
    stats = compute_statistics([make_fingerprint()] * 3)
    delta = calculate_delta(stats.sample_fingerprint, make_fingerprint(timing=5000.0), stats)
    assert delta.timing_delta_std == 0.0


def test_header_changes():
    baseline = make_fingerprint(headers={"server": "nginx", "x-cache": "HIT"})
    current = make_fingerprint(headers={"server": "cloudflare", "set-cookie": "waf=1"})
    delta = calculate_delta(baseline, current)
    assert delta.headers_added == ["set-cookie"]
    assert delta.headers_removed == ["x-cache"]
    assert delta.headers_changed["server"].old == "nginx"
    assert delta.headers_changed["server"].new == "cloudflare"
    assert "headers_changed(1)" in change_summary(delta)


def test_small_length_change_below_threshold_is_not_a_change():
    baseline = make_fingerprint(body="x" * 1000)
    current = make_fingerprint(body="x" * 1005)
    delta = calculate_delta(baseline, current)
    assert delta.body_length_delta == pytest.approx(0.005)
    assert "body_length" not in change_kinds(delta)


@pytest.mark.parametrize(
    "a, b",
    [
        ("a b c", "c d"),
        ("login failed", "login failed for user admin"),
        ("", "something"),
        ("...", "!!!"),
        ("...", "word"),
        ("Hello, World", "world"),
    ],
)
def test_token_similarity_is_symmetric(a, b):
    assert token_similarity(a, b) == token_similarity(b, a)
    assert 0.0 <= token_similarity(a, b) <= 1.0


@pytest.mark.parametrize(
    "field, value, kind",
    [
        ("status_changed", True, "status"),
        ("error_class_changed", True, "error_class"),
        ("body_hash_changed", True, "body_hash"),
        ("body_contains_target", True, "payload_reflected"),
        ("body_length_delta", 0.011, "body_length"),
        ("timing_delta_std", 0.51, "timing"),
        ("raw_body_similarity", 0.94, "similarity"),
        ("headers_added", ["x-waf"], "headers_added"),
        ("headers_removed", ["x-cache"], "headers_removed"),
        ("headers_changed", {"server": HeaderChange(old="a", new="b")}, "headers_changed"),
    ],
)
def test_each_component_past_its_threshold_is_a_change(field, value, kind):
    assert not has_any_change(ResponseDelta())
    delta = ResponseDelta(**{field: value})
    assert has_any_change(delta)
    assert change_kinds(delta) == [kind]


@pytest.mark.parametrize(
    "field, value",
    [("body_length_delta", 0.01), ("timing_delta_std", 0.5), ("raw_body_similarity", 0.95)],
)
def test_component_exactly_at_threshold_is_not_a_change(field, value):
    assert not has_any_change(ResponseDelta(**{field: value}))


def test_custom_thresholds_change_the_verdict():
    delta = ResponseDelta(body_length_delta=0.03, timing_delta_std=0.8, raw_body_similarity=0.9)
    assert change_kinds(delta) == ["body_length", "timing", "similarity"]

    loose = DeltaConfig(body_length_epsilon=0.05, timing_epsilon_std=1.0, similarity_floor=0.85)
    assert not has_any_change(delta, loose)
    assert change_summary(delta, loose) == "no_change"

    strict = DeltaConfig(body_length_epsilon=0.001)
    assert has_any_change(ResponseDelta(body_length_delta=0.005), strict)


def test_thresholds_read_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("PIVOT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PIVOT_CHANGE_BODY_LENGTH", "0.2")
    monkeypatch.setenv("PIVOT_CHANGE_TIMING_STD", "2")
    monkeypatch.setenv("PIVOT_CHANGE_SIMILARITY", "0.7")
    delta = PivotConfig.from_env().delta
    assert delta == DeltaConfig(body_length_epsilon=0.2, timing_epsilon_std=2.0, similarity_floor=0.7)


# ---------------------------------------------------------------------------
# Baseline manager
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_baseline_captured_once_and_persisted(config):
    executor = FakeExecutor()
    manager = BaselineManager(executor, config)

    first = await manager.get_or_capture("eng-1", "https://shop.example/search")
    second = await manager.get_or_capture("eng-1", "https://shop.example/search")

    assert executor.baseline_captures == 1
    assert first == second
    assert first.sample_fingerprint.raw_body_sample == BASELINE_BODY

    path = manager.path_for("eng-1")
    stored = json.loads(path.read_text())
    assert stored["engagement_id"] == "eng-1"
    assert stored["config"]["baseline"]["sample_count"] == config.baseline.sample_count


@pytest.mark.anyio
async def test_baseline_reloaded_from_disk_by_a_new_manager(config):
    await BaselineManager(FakeExecutor(), config).get_or_capture("eng-1", "https://shop.example")

    executor = FakeExecutor()
    manager = BaselineManager(executor, config)
    assert manager.has_baseline("eng-1")
    stats = await manager.get_or_capture("eng-1", "https://shop.example")
    assert isinstance(stats, BaselineStatistics)
    assert executor.baseline_captures == 0


@pytest.mark.anyio
async def test_invalidate_forces_recapture(config):
    executor = FakeExecutor()
    manager = BaselineManager(executor, config)
    await manager.get_or_capture("eng-1", "https://shop.example")
    manager.invalidate("eng-1")
    assert not manager.has_baseline("eng-1")
    await manager.get_or_capture("eng-1", "https://shop.example")
    assert executor.baseline_captures == 2


@pytest.mark.anyio
async def test_corrupt_baseline_file_is_treated_as_absent(config):
    executor = FakeExecutor()
    manager = BaselineManager(executor, config)
    manager.path_for("eng-9").write_text("{not json")

    assert manager.load("eng-9") is None
    await manager.get_or_capture("eng-9", "https://shop.example")
    assert executor.baseline_captures == 1


@pytest.mark.anyio
async def test_capture_failure_propagates(config):
    manager = BaselineManager(FakeExecutor(baseline_fails=True), config)
    with pytest.raises(BaselineCaptureFailedError):
        await manager.get_or_capture("eng-1", "https://shop.example")
    assert manager.get_cached("eng-1") is None


@pytest.mark.anyio
async def test_ids_that_sanitise_alike_keep_separate_baselines(config):
    executor = FakeExecutor()
    manager = BaselineManager(executor, config)
    await manager.get_or_capture("eng/1", "https://shop.example")

    fresh = BaselineManager(FakeExecutor(), config)
    assert fresh.path_for("eng/1") != fresh.path_for("eng_1")
    assert not fresh.has_baseline("eng_1")
    assert fresh.load("eng_1") is None
    assert fresh.load("eng/1") is not None
