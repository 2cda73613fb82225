"""Exceptions for the HA controller."""


class HAError(Exception):
    """Base exception for HA controller errors."""

    pass


class TopologyError(HAError):
    """Topology invariant violated (unknown node, second primary, etc)."""

    pass


class TransientProbeError(HAError):
    """Probe failed on timeout or connection error.

    Absorbed by the health probe and retried on the next cycle.
    """

    node_id: str

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(f"{node_id}: {message}")


class ProtocolError(HAError):
    """Unexpected or failed response on the node wire protocol."""

    pass


class QuorumNotReached(HAError):
    """Agreement window elapsed without a majority of down verdicts."""

    node_id: str
    votes: int
    required: int

    def __init__(self, node_id: str, votes: int, required: int) -> None:
        self.node_id = node_id
        self.votes = votes
        self.required = required
        super().__init__(f"Quorum not reached for {node_id}: {votes}/{required} down votes")


class PromotionTimeout(HAError):
    """Candidate did not report the primary role in time."""

    node_id: str

    def __init__(self, node_id: str, timeout: float) -> None:
        self.node_id = node_id
        super().__init__(f"Candidate {node_id} did not become primary within {timeout}s")


class NoViablePrimary(HAError):
    """No replica can be promoted; automatic remediation halts."""

    pass


class FencingFailed(HAError):
    """The old primary's write capability could not be revoked."""

    pass


class NoPrimary(HAError):
    """Topology has no primary, so there is no write endpoint."""

    pass


class StaleMappingRejected(HAError):
    """An endpoint mapping arrived with a generation lower than one already seen."""

    generation: int
    current: int

    def __init__(self, generation: int, current: int) -> None:
        self.generation = generation
        self.current = current
        super().__init__(f"Rejected mapping generation {generation}, already at {current}")
