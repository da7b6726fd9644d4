"""sshfan: Run one command on many SSH hosts in parallel."""

from .config import GatewaySpec, RunConfig, SessionConfig, TargetAddress, load_config
from .executor import Executor, FailureReport, RunOutcome, TargetStatus, exit_code
from .inventory import Inventory, load_inventory
from .session import AsyncSSHProvider, SessionError

__all__ = [
    "GatewaySpec",
    "RunConfig",
    "SessionConfig",
    "TargetAddress",
    "load_config",
    "Executor",
    "FailureReport",
    "RunOutcome",
    "TargetStatus",
    "exit_code",
    "Inventory",
    "load_inventory",
    "AsyncSSHProvider",
    "SessionError",
]
