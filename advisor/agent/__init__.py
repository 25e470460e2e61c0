"""
Advisor Agent

Per-user workers, the tool dispatcher and the task queue.
"""

from .state import AgentReply, AgentStatus
from .task_queue import TaskQueue, TaskOutcome, OutcomeKind
from .instructions import InstructionMatcher
from .dispatcher import ToolDispatcher, DispatchResult
from .services import AgentServices, build_services
from .worker import AgentWorker, CycleReport
from .registry import WorkerRegistry

__all__ = [
    "AgentReply",
    "AgentStatus",
    "TaskQueue",
    "TaskOutcome",
    "OutcomeKind",
    "InstructionMatcher",
    "ToolDispatcher",
    "DispatchResult",
    "AgentServices",
    "build_services",
    "AgentWorker",
    "CycleReport",
    "WorkerRegistry",
]
