from autopilot.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CLIBackend,
    compose_prompt,
)
from autopilot.backends.claude import ClaudeCodeBackend
from autopilot.backends.codex import CodexBackend
from autopilot.backends.codex_sdk import CodexSDKBackend
from autopilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendEventHook",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CLIBackend",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "ResilientBackend",
    "RetryPolicy",
    "compose_prompt",
]
