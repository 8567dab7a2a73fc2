"""
gateway/ — incremental delivery: the push channel and its event envelope.
"""

from reactloop.gateway.channel import ChannelRegistry, ChannelState, PushChannel
from reactloop.gateway.protocol import EventType, StreamEvent

__all__ = ["PushChannel", "ChannelState", "ChannelRegistry", "StreamEvent", "EventType"]
