"""
Background-operations runtime: result bus, spawner, poll controller,
process executor and the update loop that ties them together.
"""

from .bus import ResultBus
from .executor import LineDeduper, LineFramer, ProcessExecutor, ProcessHandle, ProcessRun
from .loop import UpdateLoop
from .polling import PollController, PollMode, PollState, transition
from .spawner import BackgroundSpawner, SpawnOutcome
from .state import AppState, AutoScroll

__all__ = [
    "AppState",
    "AutoScroll",
    "BackgroundSpawner",
    "LineDeduper",
    "LineFramer",
    "PollController",
    "PollMode",
    "PollState",
    "ProcessExecutor",
    "ProcessHandle",
    "ProcessRun",
    "ResultBus",
    "SpawnOutcome",
    "UpdateLoop",
    "transition",
]
