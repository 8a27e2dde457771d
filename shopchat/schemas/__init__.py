from shopchat.schemas.admin import TakeoverRequest, TakeoverResponse, UsersResponse
from shopchat.schemas.line import InboundMessage, LineEvent, LineWebhookRequest

__all__ = [
    "InboundMessage",
    "LineEvent",
    "LineWebhookRequest",
    "TakeoverRequest",
    "TakeoverResponse",
    "UsersResponse",
]
