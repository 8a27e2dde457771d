from dataclasses import dataclass, field

from shopchat.models.fragment_buffer import FragmentBuffer
from shopchat.models.intent import IntentRecord
from shopchat.models.takeover import TakeoverRecord


@dataclass
class CoordinatorState:
    """Process-scoped per-conversation tables, keyed by conversation key."""

    buffers: dict[str, FragmentBuffer] = field(default_factory=dict)
    takeovers: dict[str, TakeoverRecord] = field(default_factory=dict)
    intents: dict[str, IntentRecord] = field(default_factory=dict)

    def clear(self) -> None:
        for buffer in self.buffers.values():
            buffer.cancel_timer()
        self.buffers.clear()
        self.takeovers.clear()
        self.intents.clear()
