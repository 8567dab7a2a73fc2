"""
agent/ — reactloop execution engine
"""

from reactloop.agent.breaker import CircuitBreaker
from reactloop.agent.context import SessionContext
from reactloop.agent.drivers import BlockingDriver, StreamingDriver
from reactloop.agent.executor import AgentExecutor, StepKind, StepRecord, join_records
from reactloop.agent.factory import AgentFactory, AgentProfile
from reactloop.agent.registry import AgentRegistry
from reactloop.agent.state import ExecutionState
from reactloop.agent.strategies import ActStrategy, LLMThinker, ThinkStrategy, ToolBusActor

__all__ = [
    "AgentExecutor",
    "AgentFactory",
    "AgentProfile",
    "AgentRegistry",
    "BlockingDriver",
    "StreamingDriver",
    "CircuitBreaker",
    "SessionContext",
    "ExecutionState",
    "StepKind",
    "StepRecord",
    "join_records",
    "ThinkStrategy",
    "ActStrategy",
    "LLMThinker",
    "ToolBusActor",
]
