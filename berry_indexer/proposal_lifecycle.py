"""
Proposal Lifecycle State Machine

PENDING -> ACTIVE -> {DEFEATED, SUCCEEDED, OBJECTION_PERIOD -> {SUCCEEDED, DEFEATED}}
        -> QUEUED -> {EXECUTED, EXPIRED}

CANCELLED and VETOED are reachable from any non-terminal state. UPDATABLE is a
sub-state of PENDING. Events only name their target state; intermediate states
(ACTIVE, SUCCEEDED) have no event of their own, so a target is accepted when it
is reachable from the stored state, not only when it is adjacent.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .types import ProposalStatus
from .events import EventType

S = ProposalStatus

TERMINAL_STATES: FrozenSet[ProposalStatus] = frozenset({
    S.EXECUTED, S.EXPIRED, S.DEFEATED, S.CANCELLED, S.VETOED,
})

# Statuses from which the proposal can no longer reach quorum
FINALIZED_STATES: FrozenSet[ProposalStatus] = frozenset({
    S.DEFEATED, S.SUCCEEDED, S.QUEUED, S.EXECUTED, S.EXPIRED,
})

ABORT_STATES: FrozenSet[ProposalStatus] = frozenset({S.CANCELLED, S.VETOED})

_EDGES: Dict[ProposalStatus, FrozenSet[ProposalStatus]] = {
    S.UPDATABLE: frozenset({S.PENDING, S.ACTIVE}),
    S.PENDING: frozenset({S.UPDATABLE, S.ACTIVE}),
    S.ACTIVE: frozenset({S.OBJECTION_PERIOD, S.SUCCEEDED, S.DEFEATED}),
    S.OBJECTION_PERIOD: frozenset({S.SUCCEEDED, S.DEFEATED}),
    S.SUCCEEDED: frozenset({S.QUEUED}),
    S.QUEUED: frozenset({S.EXECUTED, S.EXPIRED}),
}

# Event variants that name a target status
EVENT_TARGETS: Dict[EventType, ProposalStatus] = {
    EventType.PROPOSAL_CREATED: S.PENDING,
    EventType.PROPOSAL_CANCELED: S.CANCELLED,
    EventType.PROPOSAL_QUEUED: S.QUEUED,
    EventType.PROPOSAL_EXECUTED: S.EXECUTED,
    EventType.PROPOSAL_VETOED: S.VETOED,
}

# On-chain NounsDAO ProposalState enum order
ONCHAIN_STATES = (
    S.PENDING,
    S.ACTIVE,
    S.CANCELLED,
    S.DEFEATED,
    S.SUCCEEDED,
    S.QUEUED,
    S.EXPIRED,
    S.EXECUTED,
    S.VETOED,
    S.OBJECTION_PERIOD,
    S.UPDATABLE,
)


def _closure(start: ProposalStatus) -> FrozenSet[ProposalStatus]:
    seen = set()
    frontier = [start]
    while frontier:
        state = frontier.pop()
        for nxt in _EDGES.get(state, ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    seen.discard(start)
    return frozenset(seen)


_REACHABLE: Dict[ProposalStatus, FrozenSet[ProposalStatus]] = {s: _closure(s) for s in S}


class TransitionDecision(str, Enum):
    """Outcome of a requested status change"""
    APPLY = "apply"
    NOOP = "noop"          # Already in the target state
    IGNORED = "ignored"    # Target not reachable (stale or redelivered event)


def is_terminal(status: ProposalStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: ProposalStatus, target: ProposalStatus) -> bool:
    if current in TERMINAL_STATES:
        return False
    if target in ABORT_STATES:
        return True
    return target in _REACHABLE[current]


def decide(current: Optional[ProposalStatus], target: ProposalStatus) -> TransitionDecision:
    """
    Decide whether ``target`` may replace the stored ``current`` status.

    A missing row (current is None) accepts any target.
    """
    if current is None:
        return TransitionDecision.APPLY
    if current == target:
        return TransitionDecision.NOOP
    if can_transition(current, target):
        return TransitionDecision.APPLY
    return TransitionDecision.IGNORED


def status_from_onchain(index: int) -> ProposalStatus:
    """Map the DAO's ``state(id)`` return value to a ProposalStatus"""
    if index < 0 or index >= len(ONCHAIN_STATES):
        raise ValueError(f"Unknown on-chain proposal state {index}")
    return ONCHAIN_STATES[index]
