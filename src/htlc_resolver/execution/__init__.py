"""Order execution: queue, settlement state machine and secret intake."""

from htlc_resolver.execution.executor import CrossChainExecutor
from htlc_resolver.execution.scheduler import ExecutionScheduler
from htlc_resolver.execution.secret_provider import InMemorySecretProvider, SecretProvider

__all__ = [
    "CrossChainExecutor",
    "ExecutionScheduler",
    "InMemorySecretProvider",
    "SecretProvider",
]
