from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class TakeoverRecord:
    key: str
    until: datetime

    def is_active(self, now: datetime) -> bool:
        return self.until > now
