"""Control-plane public API."""

from patchpilot.control_plane.dispatcher import (
    AsyncDispatcher,
    Dispatcher,
    StageJob,
    SynchronousDispatcher,
)
from patchpilot.control_plane.stages import StageCollaborators, StageOutcome, StageRunner
from patchpilot.control_plane.state_machine import WorkflowStateMachine

__all__ = [
    "AsyncDispatcher",
    "Dispatcher",
    "StageCollaborators",
    "StageJob",
    "StageOutcome",
    "StageRunner",
    "SynchronousDispatcher",
    "WorkflowStateMachine",
]
