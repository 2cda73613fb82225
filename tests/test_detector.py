"""Tests for quorum failure detection."""

import pytest

from hacontroller.config import DetectorConfig
from hacontroller.detector import DetectorState, QuorumFailureDetector
from hacontroller.exceptions import QuorumNotReached
from hacontroller.models import HealthStatus, Observation
from helpers import FakeClock

DOWN = HealthStatus.DOWN
HEALTHY = HealthStatus.HEALTHY


def vote(observer: str, verdict: HealthStatus, ts: float, node_id: str = "p1") -> Observation:
    return Observation(observer_id=observer, node_id=node_id, verdict=verdict, timestamp=ts)


@pytest.fixture
def detector(clock: FakeClock) -> QuorumFailureDetector:
    config = DetectorConfig(observers=["o1", "o2", "o3"], agreement_window=10)
    return QuorumFailureDetector(config, clock=clock)


class TestQuorumFailureDetector:
    def test_quorum_is_strict_majority(self) -> None:
        assert QuorumFailureDetector(DetectorConfig(observers=["a", "b", "c"])).quorum == 2
        assert QuorumFailureDetector(DetectorConfig(observers=["a", "b", "c", "d"])).quorum == 3
        assert QuorumFailureDetector(DetectorConfig(observers=["a"])).quorum == 1

    def test_single_vote_only_suspects(self, detector: QuorumFailureDetector) -> None:
        assert detector.observe(vote("o1", DOWN, 0)) is None
        assert detector.state("p1") == DetectorState.SUSPECT

    def test_majority_confirms(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        event = detector.observe(vote("o2", DOWN, 3))

        assert event is not None
        assert event.node_id == "p1"
        assert event.observers == ("o1", "o2")
        assert detector.state("p1") == DetectorState.CONFIRMED_DOWN

    def test_repeated_votes_from_one_observer(self, detector: QuorumFailureDetector) -> None:
        for ts in range(5):
            assert detector.observe(vote("o1", DOWN, ts)) is None
        assert detector.state("p1") == DetectorState.SUSPECT

    def test_event_emitted_once(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        assert detector.observe(vote("o2", DOWN, 1)) is not None
        assert detector.observe(vote("o3", DOWN, 2)) is None
        assert detector.observe(vote("o1", DOWN, 3)) is None

    def test_votes_outside_window_do_not_count(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        assert detector.observe(vote("o2", DOWN, 15)) is None
        assert detector.state("p1") == DetectorState.SUSPECT

        # o1 re-asserts inside the restarted window
        assert detector.observe(vote("o1", DOWN, 16)) is not None

    def test_expire_reports_quorum_not_reached(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))

        assert detector.expire(5) == []
        expired = detector.expire(20)

        assert len(expired) == 1
        assert isinstance(expired[0], QuorumNotReached)
        assert expired[0].votes == 1
        assert expired[0].required == 2
        # The lone stale vote was discarded
        assert detector.state("p1") == DetectorState.HEALTHY

    def test_suspect_cleared_by_healthy_votes(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        detector.observe(vote("o1", HEALTHY, 1))
        assert detector.state("p1") == DetectorState.HEALTHY

    def test_recovery_needs_majority(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        detector.observe(vote("o2", DOWN, 1))

        detector.observe(vote("o1", HEALTHY, 5))
        assert detector.state("p1") == DetectorState.CONFIRMED_DOWN

        detector.observe(vote("o2", HEALTHY, 6))
        assert detector.state("p1") == DetectorState.HEALTHY

        # A fresh failure can be confirmed and emitted again
        detector.observe(vote("o1", DOWN, 20))
        assert detector.observe(vote("o3", DOWN, 21)) is not None

    def test_unknown_observer_ignored(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        assert detector.observe(vote("intruder", DOWN, 1)) is None
        assert detector.state("p1") == DetectorState.SUSPECT

    def test_older_vote_ignored(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", HEALTHY, 5))
        detector.observe(vote("o1", DOWN, 3))
        assert detector.state("p1") == DetectorState.HEALTHY

    def test_replica_confirmed_without_event(self, clock: FakeClock) -> None:
        detector = QuorumFailureDetector(
            DetectorConfig(observers=["o1", "o2", "o3"]),
            is_primary=lambda node_id: node_id == "p1",
            clock=clock,
        )
        detector.observe(vote("o1", DOWN, 0, node_id="r1"))
        assert detector.observe(vote("o2", DOWN, 1, node_id="r1")) is None
        assert detector.state("r1") == DetectorState.CONFIRMED_DOWN

    def test_require_confirmed(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        with pytest.raises(QuorumNotReached, match="1/2"):
            detector.require_confirmed("p1")

        detector.observe(vote("o2", DOWN, 1))
        detector.require_confirmed("p1")

    def test_forget(self, detector: QuorumFailureDetector) -> None:
        detector.observe(vote("o1", DOWN, 0))
        detector.forget("p1")
        assert detector.state("p1") == DetectorState.HEALTHY
