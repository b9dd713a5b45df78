"""Message pipeline: admission, status state machine and stage handlers."""

from inbox_pipeline.pipeline.admission import Admission
from inbox_pipeline.pipeline.state import MessageStateMachine
from inbox_pipeline.pipeline.stages import (
    ClassifyStage,
    ExtractStage,
    StageDispatcher,
    SyncStage,
)

__all__ = [
    "Admission",
    "MessageStateMachine",
    "ClassifyStage",
    "ExtractStage",
    "StageDispatcher",
    "SyncStage",
]
