from dataclasses import dataclass
from enum import Enum


class SubTopic(str, Enum):
    DIMENSION = "dimension"
    BUNDLE_SIZE = "bundle_size"


@dataclass(frozen=True)
class IntentRecord:
    key: str
    topic: SubTopic
    group: str
    created_at: float
