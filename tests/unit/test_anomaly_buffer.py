import csv
import io
import json
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from pivot.anomaly import AnomalyBuffer, confidence_band
from pivot.anomaly.buffer import CSV_COLUMNS
from pivot.contracts.models import AnomalyRecord, ResponseDelta, utcnow

STATUS_FLIP = ResponseDelta(status_changed=True, body_hash_changed=True)
SLOW = ResponseDelta(timing_delta_std=3.0)


def _record(buffer, engagement_id="eng-1", score=0.5, delta=STATUS_FLIP, strategy="encoding:url_single"):
    return buffer.record(
        engagement_id,
        delta,
        score,
        obstacle_id="obs-1",
        context={"mutation_strategy": strategy, "classification": "WAF_BLOCK"},
    )


def test_confidence_bands():
    assert confidence_band(0.1) == "low"
    assert confidence_band(0.3) == "medium"
    assert confidence_band(0.69) == "medium"
    assert confidence_band(0.7) == "high"


def test_records_survive_restart_without_duplication(config):
    first = AnomalyBuffer(config)
    _record(first, score=0.2)
    _record(first, score=0.4)

    second = AnomalyBuffer(config)
    assert len(second.get_anomalies("eng-1")) == 2
    _record(second, score=0.9)

    third = AnomalyBuffer(config)
    scores = [r.confidence_score for r in third.get_anomalies("eng-1")]
    assert scores == [0.2, 0.4, 0.9]
    lines = third.path_for("eng-1").read_text().splitlines()
    assert len(lines) == 3


def test_engagements_are_isolated(config):
    buffer = AnomalyBuffer(config)
    _record(buffer, "eng-1")
    _record(buffer, "eng-2")
    _record(buffer, "eng-2")
    assert len(buffer.get_anomalies("eng-1")) == 1
    assert len(buffer.get_anomalies("eng-2")) == 2


def test_change_summary_and_filters(config):
    buffer = AnomalyBuffer(config)
    _record(buffer, score=0.2, delta=SLOW)
    _record(buffer, score=0.8)

    assert buffer.get_anomalies("eng-1", min_confidence=0.5)[0].change_summary == "status, body_hash"
    assert len(buffer.get_anomalies("eng-1", limit=1)) == 1

    bands = buffer.by_confidence("eng-1")
    assert len(bands["low"]) == 1 and len(bands["high"]) == 1
    kinds = buffer.by_change_type("eng-1")
    assert set(kinds) == {"status", "body_hash", "timing"}


def test_statistics(config):
    buffer = AnomalyBuffer(config)
    _record(buffer, score=0.2)
    _record(buffer, score=0.6)
    stats = buffer.statistics("eng-1")
    assert stats["total"] == 2
    assert stats["by_confidence"] == {"low": 1, "medium": 1, "high": 0}
    assert stats["by_change_type"]["status"] == 2
    assert stats["average_confidence"] == pytest.approx(0.4)


def test_export_json_and_csv(config):
    buffer = AnomalyBuffer(config)
    _record(buffer, score=0.75, strategy="structural:case_variation")

    exported = json.loads(buffer.export("eng-1", "json"))
    assert exported["total_anomalies"] == 1
    assert exported["anomalies"][0]["context"]["mutation_strategy"] == "structural:case_variation"

    rows = list(csv.reader(io.StringIO(buffer.export("eng-1", "csv"))))
    assert rows[0] == CSV_COLUMNS
    assert rows[1][3] == "0.7500"
    assert rows[1][5] == "structural:case_variation"

    with pytest.raises(ValueError):
        buffer.export("eng-1", "xml")


def test_prune_by_age_and_count(config):
    buffer = AnomalyBuffer(config)
    old = AnomalyRecord(
        timestamp=utcnow() - timedelta(days=40),
        engagement_id="eng-1",
        delta=STATUS_FLIP,
        confidence_score=0.5,
        change_summary="status, body_hash",
    )
    buffer.add(old)
    for _ in range(4):
        _record(buffer)

    assert buffer.prune("eng-1") == 1
    assert buffer.prune("eng-1", max_count=2) == 2
    assert len(buffer.get_anomalies("eng-1")) == 2
    assert len(AnomalyBuffer(config).get_anomalies("eng-1")) == 2
    assert buffer.prune("eng-1") == 0


def test_corrupt_file_is_quarantined(config):
    buffer = AnomalyBuffer(config)
    path = buffer.path_for("eng-1")
    path.write_text("{this is not json}\n")

    assert buffer.get_anomalies("eng-1") == []
    assert not path.exists()
    assert list(path.parent.glob(f"{path.name}.corrupt-*"))

    _record(buffer)
    assert len(AnomalyBuffer(config).get_anomalies("eng-1")) == 1


def test_clear_removes_file(config):
    buffer = AnomalyBuffer(config)
    _record(buffer)
    buffer.clear("eng-1")
    assert not buffer.path_for("eng-1").exists()
    assert buffer.get_anomalies("eng-1") == []


def test_concurrent_writers_lose_nothing(config):
    buffer = AnomalyBuffer(config)

    def writer(n):
        for i in range(50):
            _record(buffer, score=0.5, strategy=f"writer-{n}-{i}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    reloaded = AnomalyBuffer(config).get_anomalies("eng-1")
    assert len(reloaded) == 200
    assert len({r.context["mutation_strategy"] for r in reloaded}) == 200


def test_in_memory_cap(config):
    capped = replace(config, anomaly=replace(config.anomaly, max_per_engagement=3))
    buffer = AnomalyBuffer(capped)
    for _ in range(5):
        _record(buffer)
    assert len(buffer.get_anomalies("eng-1")) == 3
    assert len(buffer.path_for("eng-1").read_text().splitlines()) == 5


def test_export_after_restart_includes_records_beyond_cap(config):
    capped = replace(config, anomaly=replace(config.anomaly, max_per_engagement=3))
    buffer = AnomalyBuffer(capped)
    for i in range(5):
        _record(buffer, strategy=f"s-{i}")

    restarted = AnomalyBuffer(capped)
    assert len(restarted.get_anomalies("eng-1")) == 3
    exported = json.loads(restarted.export("eng-1", "json"))
    assert exported["total_anomalies"] == 5
    assert [a["context"]["mutation_strategy"] for a in exported["anomalies"]] == [f"s-{i}" for i in range(5)]
    rows = list(csv.reader(io.StringIO(restarted.export("eng-1", "csv"))))
    assert len(rows) == 6


@pytest.mark.parametrize("other", ["eng_1", "eng:1", "eng 1"])
def test_ids_that_sanitise_alike_keep_separate_files(config, other):
    buffer = AnomalyBuffer(config)
    _record(buffer, "eng/1")

    assert buffer.path_for("eng/1") != buffer.path_for(other)
    fresh = AnomalyBuffer(config)
    assert fresh.get_anomalies(other) == []
    assert len(fresh.get_anomalies("eng/1")) == 1


def test_change_thresholds_come_from_config(config):
    delta = ResponseDelta(timing_delta_std=0.8)
    default = AnomalyBuffer(config).record("eng-1", delta, 0.3)
    assert default.change_summary == "timing(0.80σ)"

    strict = replace(config, delta=replace(config.delta, timing_epsilon_std=1.0))
    relaxed = AnomalyBuffer(strict).record("eng-2", delta, 0.3)
    assert relaxed.change_summary == "no_change"
    assert AnomalyBuffer(strict).by_change_type("eng-2") == {}
