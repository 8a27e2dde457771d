from shopchat.models.coordinator_state import CoordinatorState
from shopchat.models.fragment_buffer import FragmentBuffer
from shopchat.models.intent import IntentRecord, SubTopic
from shopchat.models.takeover import TakeoverRecord

__all__ = [
    "CoordinatorState",
    "FragmentBuffer",
    "IntentRecord",
    "SubTopic",
    "TakeoverRecord",
]
