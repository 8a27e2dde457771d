import asyncio
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class FragmentBuffer:
    key: str
    started_at: float
    fragments: list[str] = field(default_factory=list)
    timer: Optional[asyncio.Task] = None

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None
