"""Activity execution subsystem package."""

from .driver import ActivityDriver, TransitionCallback
from .models import (
    ActivityHandle,
    CommandResult,
    ContainerVolume,
    DeployResult,
    ExecutionReport,
    deploy_command,
    run_command,
    run_commands_from_config,
    start_command,
)

__all__ = [
    "ActivityDriver",
    "ActivityHandle",
    "CommandResult",
    "ContainerVolume",
    "DeployResult",
    "ExecutionReport",
    "TransitionCallback",
    "deploy_command",
    "run_command",
    "run_commands_from_config",
    "start_command",
]
