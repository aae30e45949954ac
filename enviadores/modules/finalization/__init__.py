"""
Finalization Module

- machine.FinalizationStateMachine drives one session from quote to shipment
- ManualChoice / AggregatorChoice hold the per-path drafts
- AutoCommitTimer is the cancellable countdown

FinalizationStateMachine is imported from .machine directly.
"""
from enviadores.modules.finalization.choices import AggregatorChoice, FulfillmentChoice, ManualChoice
from enviadores.modules.finalization.states import FinalizationStatus, FulfillmentKind
from enviadores.modules.finalization.timer import AutoCommitTimer, TimerState

__all__ = [
    "AggregatorChoice",
    "AutoCommitTimer",
    "FinalizationStatus",
    "FulfillmentChoice",
    "FulfillmentKind",
    "ManualChoice",
    "TimerState",
]
