import threading

import pytest

from pivot.base.config import RoutingConfig
from pivot.base.errors import CorruptStateFileError
from pivot.contracts.enums import Lane, ObstacleClassification, SignatureSource
from pivot.contracts.models import AttemptRecord, ObstacleEvent, PatternSignature
from pivot.routing import EMPTY_RESPONSE_ID, PatternMatcher, Router, RoutingStateStore
from pivot.scoring import DeterministicScorer


def _event(terminal_output: str, engagement_id: str = "eng-1") -> ObstacleEvent:
    return ObstacleEvent(obstacle_id="obs-1", engagement_id=engagement_id, terminal_output=terminal_output)


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


def test_waf_page_matches_generic_block_with_bonus():
    matches = PatternMatcher(RoutingStateStore()).match("403 Forbidden... Request blocked")
    top = matches[0]
    assert top.signature.id == "WAF_GENERIC_BLOCK"
    assert top.confidence == pytest.approx(0.95)
    assert top.matched == ("403 Forbidden", "Request blocked")


def test_matching_is_case_insensitive():
    matches = PatternMatcher(RoutingStateStore()).match("ACCESS DENIED by policy")
    assert matches[0].signature.id == "WAF_GENERIC_BLOCK"
    assert matches[0].confidence == pytest.approx(0.90)


def test_matches_sorted_by_confidence():
    text = "403 Forbidden: You have an error in your SQL syntax"
    matches = PatternMatcher(RoutingStateStore()).match(text)
    assert [m.signature.id for m in matches] == ["SQL_ERROR_MYSQL", "WAF_GENERIC_BLOCK"]


def test_bonus_is_capped_at_one():
    text = "You have an error in your SQL syntax; mysql_fetch_array() failed"
    matches = PatternMatcher(RoutingStateStore()).match(text)
    assert matches[0].confidence == 1.0


@pytest.mark.parametrize("output", ["", "   \n"])
def test_empty_output_matches_empty_response(output):
    matches = PatternMatcher(RoutingStateStore()).match(output)
    assert len(matches) == 1
    assert matches[0].signature.id == EMPTY_RESPONSE_ID
    assert matches[0].signature.classification == ObstacleClassification.TIMEOUT_OR_DROP


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "confidence,decay,expected",
    [
        (0.80, False, Lane.DETERMINISTIC),
        (0.35, False, Lane.FREESTYLE),
        (0.55, False, Lane.HYBRID),
        (0.80, True, Lane.HYBRID),
        (0.75, False, Lane.HYBRID),
        (0.40, False, Lane.HYBRID),
    ],
)
def test_lane_thresholds(confidence, decay, expected):
    assert Router(RoutingStateStore()).select_lane(confidence, decay) == expected


def test_thresholds_come_from_config():
    router = Router(RoutingStateStore(), config=RoutingConfig(deterministic_threshold=0.9))
    assert router.select_lane(0.85) == Lane.HYBRID


def test_waf_obstacle_routes_deterministic():
    decision = Router(RoutingStateStore()).route(_event("403 Forbidden... Request blocked"))
    assert decision.lane == Lane.DETERMINISTIC
    assert decision.matched_pattern == "WAF_GENERIC_BLOCK"
    assert decision.classification == ObstacleClassification.WAF_BLOCK
    assert decision.confidence == pytest.approx(0.95 * 0.90)
    assert not decision.fallback_eligible


def test_no_match_routes_freestyle():
    decision = Router(RoutingStateStore()).route(_event("the target replied with a haiku"))
    assert decision.lane == Lane.FREESTYLE
    assert decision.confidence == pytest.approx(0.1)
    assert decision.matched_pattern is None
    assert decision.classification == ObstacleClassification.UNKNOWN
    assert decision.fallback_eligible


def test_empty_output_routes_freestyle():
    decision = Router(RoutingStateStore()).route(_event(""))
    assert decision.matched_pattern == EMPTY_RESPONSE_ID
    assert decision.lane == Lane.FREESTYLE


def test_lowered_weight_downgrades_lane():
    store = RoutingStateStore()
    store.set_weight("WAF_GENERIC_BLOCK", 0.5)
    decision = Router(store).route(_event("403 Forbidden... Request blocked"))
    assert decision.lane == Lane.HYBRID


def test_decay_forces_hybrid_with_note():
    scorer = DeterministicScorer()
    for index, score in enumerate([0.8, 0.6, 0.4, 0.2]):
        scorer.ledger.record(
            "eng-1",
            f"old-{index}",
            AttemptRecord(strategy="encoding:url_single", score=score),
            progressed=False,
            classification=ObstacleClassification.WAF_BLOCK.value,
        )

    router = Router(RoutingStateStore(), scorer=scorer)
    decision = router.route(_event("403 Forbidden... Request blocked"))
    assert decision.lane == Lane.HYBRID
    assert "confidence decay" in decision.reasoning

    other = router.route(_event("403 Forbidden... Request blocked", engagement_id="eng-2"))
    assert other.lane == Lane.DETERMINISTIC


# ---------------------------------------------------------------------------
# Routing state store
# ---------------------------------------------------------------------------


def _learned(sig_id: str = "ANOMALY_STATUS") -> PatternSignature:
    return PatternSignature(
        id=sig_id,
        patterns=["blocked by upstream"],
        classification=ObstacleClassification.WAF_BLOCK,
        confidence=0.6,
        source=SignatureSource.REVIEW,
    )


def test_weights_default_to_signature_confidence_and_clamp():
    store = RoutingStateStore()
    assert store.weight("RATE_LIMIT") == pytest.approx(0.95)
    assert store.weight("NO_SUCH_SIGNATURE") == store.config.default_weight
    assert store.set_weight("RATE_LIMIT", 5.0) == 1.0
    assert store.set_weight("RATE_LIMIT", -1.0) == store.config.weight_floor


def test_staged_updates_are_invisible_until_promoted():
    store = RoutingStateStore()
    store.stage_weight("eng-1", "WAF_GENERIC_BLOCK", 0.3)
    store.stage_signature("eng-1", _learned())

    assert store.weight("WAF_GENERIC_BLOCK") == pytest.approx(0.9)
    assert store.get_signature("ANOMALY_STATUS") is None
    assert not store.staged("eng-1").is_empty()

    assert store.promote("eng-1") == 2
    assert store.weight("WAF_GENERIC_BLOCK") == pytest.approx(0.3)
    assert store.get_signature("ANOMALY_STATUS") is not None
    assert store.staged("eng-1").is_empty()
    assert store.promote("eng-1") == 0


def test_discard_drops_staged_updates():
    store = RoutingStateStore()
    store.stage_weight("eng-1", "WAF_GENERIC_BLOCK", 0.3)
    store.discard("eng-1")
    assert store.promote("eng-1") == 0
    assert store.weight("WAF_GENERIC_BLOCK") == pytest.approx(0.9)


def test_snapshot_restore_and_file_round_trip(tmp_path):
    store = RoutingStateStore()
    store.add_signature(_learned())
    store.set_weight("AUTH_REQUIRED", 0.55)

    restored = RoutingStateStore(signatures=[])
    restored.restore(store.snapshot())
    assert restored.weights() == store.weights()

    path = tmp_path / "routing_state.json"
    store.save(path)
    loaded = RoutingStateStore.load(path)
    assert loaded.weight("AUTH_REQUIRED") == pytest.approx(0.55)
    assert loaded.get_signature("ANOMALY_STATUS").source == SignatureSource.REVIEW


def test_corrupt_state_file(tmp_path):
    path = tmp_path / "routing_state.json"
    path.write_text("[1, 2")
    store = RoutingStateStore.load(path)
    assert {s.id for s in store.signatures()} >= {"WAF_GENERIC_BLOCK", EMPTY_RESPONSE_ID}

    with pytest.raises(CorruptStateFileError):
        RoutingStateStore.load(path, strict=True)


def test_remove_signature():
    store = RoutingStateStore()
    assert store.remove_signature("AMBIGUOUS_500")
    assert not store.remove_signature("AMBIGUOUS_500")
    assert store.get_signature("AMBIGUOUS_500") is None


def test_reads_never_block_concurrent_writers():
    store = RoutingStateStore()
    errors = []
    stop = threading.Event()

    def reader():
        try:
            while not stop.is_set():
                for sig_id, weight in store.weights().items():
                    assert 0.1 <= weight <= 1.0, sig_id
        except AssertionError as e:
            errors.append(e)

    def writer(offset):
        for step in range(200):
            store.set_weight("WAF_GENERIC_BLOCK", 0.1 + ((step + offset) % 9) / 10)

    readers = [threading.Thread(target=reader) for _ in range(2)]
    writers = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    for thread in readers + writers:
        thread.start()
    for thread in writers:
        thread.join()
    stop.set()
    for thread in readers:
        thread.join()

    assert not errors
