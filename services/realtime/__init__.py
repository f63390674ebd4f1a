from services.realtime.channel import ChannelStatus, RealtimeChannel
from services.realtime.presence import PresenceState
from services.realtime.socket import RealtimeSocket, RealtimeUnavailable

__all__ = [
    "ChannelStatus",
    "PresenceState",
    "RealtimeChannel",
    "RealtimeSocket",
    "RealtimeUnavailable",
]
