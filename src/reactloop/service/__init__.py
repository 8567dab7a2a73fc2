"""
service/ — reactloop caller-facing operations
"""

from reactloop.service.agent_service import AgentService, new_session_id
from reactloop.service.chat_service import ChatService
from reactloop.service.models import AgentRequest, AgentResponse, ResponseStatus

__all__ = [
    "AgentService",
    "ChatService",
    "AgentRequest",
    "AgentResponse",
    "ResponseStatus",
    "new_session_id",
]
