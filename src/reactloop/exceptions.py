"""
reactloop/exceptions.py — reactloop Unified Error Hierarchy

All reactloop-specific exceptions live here. Every layer of the stack
raises typed subclasses of ReactLoopError, never bare Exception.

Import from here, not from individual modules:
    from reactloop.exceptions import ValidationError, CircuitOpenError

Hierarchy:
    ReactLoopError
    ├── AgentError
    │   ├── ValidationError
    │   ├── ReasoningError
    │   ├── ActionError
    │   └── CircuitOpenError
    ├── ChannelError
    ├── SessionStoreError
    ├── ToolError
    │   ├── ToolNotFoundError
    │   └── RegistryFrozenError
    └── LLMError
        ├── LLMConnectionError
        ├── LLMRateLimitError
        ├── LLMContextError
        └── LLMInvalidRequestError

Only ValidationError ever crosses the public service boundary as an
exception. Everything else is caught inside the loop or the drivers and
turned into text on the normal result path.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ReactLoopError(Exception):
    """Base class for all reactloop exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(ReactLoopError):
    """Base for agent execution errors."""


class ValidationError(AgentError):
    """Illegal input or illegal state transition. Raised before any mutation."""


class ReasoningError(AgentError):
    """The model call failed during THINK."""


class ActionError(AgentError):
    """A capability invocation failed during ACT."""


class CircuitOpenError(AgentError):
    """Consecutive-failure threshold reached. The run is halted until reset()."""

    def __init__(self, failures: int, threshold: int, message: str = "") -> None:
        self.failures = failures
        self.threshold = threshold
        super().__init__(
            message
            or f"Halted after {failures} consecutive failures (threshold {threshold})."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Streaming / storage / tools
# ─────────────────────────────────────────────────────────────────────────────

class ChannelError(ReactLoopError):
    """Push-channel delivery failed or the channel is no longer open."""


class SessionStoreError(ReactLoopError):
    """A session store read or write failed."""


class ToolError(ReactLoopError):
    """Base for capability registry errors."""


class ToolNotFoundError(ToolError):
    """Requested tool is not registered."""


class RegistryFrozenError(ToolError):
    """Registration attempted after the registry was frozen at startup."""


# ─────────────────────────────────────────────────────────────────────────────
# LLM layer
# ─────────────────────────────────────────────────────────────────────────────

class LLMError(ReactLoopError):
    """Base exception for all LLM client errors."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable or authentication failed."""


class LLMRateLimitError(LLMError):
    """Rate limit hit."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMContextError(LLMError):
    """Input exceeds model context window."""


class LLMInvalidRequestError(LLMError):
    """Bad request: invalid parameters or an unsupported feature."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "ReactLoopError",
    # Agent
    "AgentError",
    "ValidationError",
    "ReasoningError",
    "ActionError",
    "CircuitOpenError",
    # Streaming / storage / tools
    "ChannelError",
    "SessionStoreError",
    "ToolError",
    "ToolNotFoundError",
    "RegistryFrozenError",
    # LLM
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMContextError",
    "LLMInvalidRequestError",
]
