"""
Offset Commit Policies
======================

Decide when the in-memory offset must be flushed to the offset store.

- periodic: commit once the flush interval has elapsed
- always: commit after every record
"""

import math

from .errors import ConfigurationError

POLICY_PERIODIC = "periodic"
POLICY_ALWAYS = "always"


class CommitPolicy:
    """Base commit policy. Implementations must be side-effect free."""

    def should_commit(self, events_since_last_commit: int, time_since_last_commit: float) -> bool:
        raise NotImplementedError


class AlwaysCommitPolicy(CommitPolicy):
    """Commit after every processed record."""

    def should_commit(self, events_since_last_commit: int, time_since_last_commit: float) -> bool:
        return True

    def __repr__(self) -> str:
        return "AlwaysCommitPolicy()"


class PeriodicCommitPolicy(CommitPolicy):
    """
    Commit when at least `interval` seconds passed since the last commit.

    An interval <= 0 behaves like AlwaysCommitPolicy; math.inf never commits
    (the engine still forces a commit on shutdown).
    """

    def __init__(self, interval: float):
        self.interval = float(interval)

    def should_commit(self, events_since_last_commit: int, time_since_last_commit: float) -> bool:
        if self.interval <= 0:
            return True
        if math.isinf(self.interval):
            return False
        return time_since_last_commit >= self.interval

    def __repr__(self) -> str:
        return f"PeriodicCommitPolicy(interval={self.interval})"


def create_commit_policy(name: str, interval: float = 60.0) -> CommitPolicy:
    """
    Build a commit policy from its configured name.

    Args:
        name: "periodic" or "always"
        interval: Flush interval in seconds (periodic only)

    Returns:
        CommitPolicy instance
    """
    policy = (name or "").lower()
    if policy == POLICY_ALWAYS:
        return AlwaysCommitPolicy()
    if policy == POLICY_PERIODIC:
        return PeriodicCommitPolicy(interval)
    raise ConfigurationError(f"Unknown offset commit policy: {name}", {"policy": name})
