"""
Finalization session states and the actions allowed from each.
"""
from enum import Enum
from typing import Dict, FrozenSet


class FulfillmentKind(str, Enum):
    EXTERNAL = "external"
    AGGREGATOR = "aggregator"


class FinalizationStatus(str, Enum):
    SELECTING = "selecting"
    CONFIGURING = "configuring"
    MANUAL_READY = "manual_ready"
    ACQUIRING_RATE = "acquiring_rate"
    RATE_SELECTED = "rate_selected"
    GENERATING_LABEL = "generating_label"
    LABEL_READY = "label_ready"
    RETRIEVING_ASSET = "retrieving_asset"
    ASSET_READY = "asset_ready"
    COMMITTING = "committing"
    COMMITTED = "committed"
    COMMIT_FAILED = "commit_failed"
    CLOSED = "closed"


S = FinalizationStatus

# Statuses from which the operator may leave the current path
SWITCHABLE: FrozenSet[FinalizationStatus] = frozenset({
    S.SELECTING, S.CONFIGURING, S.MANUAL_READY, S.ACQUIRING_RATE, S.RATE_SELECTED,
    S.GENERATING_LABEL, S.LABEL_READY, S.RETRIEVING_ASSET, S.ASSET_READY, S.COMMIT_FAILED,
})

# Statuses from which commit may be requested (completeness is checked separately)
COMMITTABLE: FrozenSet[FinalizationStatus] = frozenset({
    S.MANUAL_READY, S.ASSET_READY, S.COMMIT_FAILED,
})

TERMINAL: FrozenSet[FinalizationStatus] = frozenset({S.COMMITTED, S.CLOSED})

ALLOWED_TRANSITIONS: Dict[FinalizationStatus, FrozenSet[FinalizationStatus]] = {
    S.SELECTING: frozenset({S.CONFIGURING, S.CLOSED}),
    S.CONFIGURING: frozenset({S.CONFIGURING, S.MANUAL_READY, S.ACQUIRING_RATE, S.RATE_SELECTED, S.CLOSED}),
    S.MANUAL_READY: frozenset({S.CONFIGURING, S.MANUAL_READY, S.COMMITTING, S.CLOSED}),
    S.ACQUIRING_RATE: frozenset({S.CONFIGURING, S.CLOSED}),
    S.RATE_SELECTED: frozenset({S.CONFIGURING, S.GENERATING_LABEL, S.CLOSED}),
    S.GENERATING_LABEL: frozenset({S.CONFIGURING, S.RATE_SELECTED, S.LABEL_READY, S.CLOSED}),
    S.LABEL_READY: frozenset({S.CONFIGURING, S.RETRIEVING_ASSET, S.CLOSED}),
    S.RETRIEVING_ASSET: frozenset({S.CONFIGURING, S.ASSET_READY, S.CLOSED}),
    S.ASSET_READY: frozenset({S.CONFIGURING, S.RETRIEVING_ASSET, S.COMMITTING, S.CLOSED}),
    S.COMMITTING: frozenset({S.COMMITTED, S.COMMIT_FAILED, S.CLOSED}),
    S.COMMIT_FAILED: frozenset({S.CONFIGURING, S.MANUAL_READY, S.COMMITTING, S.CLOSED}),
    S.COMMITTED: frozenset(),
    S.CLOSED: frozenset(),
}


def can_transition(current: FinalizationStatus, target: FinalizationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
