import re
import threading
import time
from typing import Callable, List, Optional

from shopchat.logging_config import get_logger
from shopchat.models import CoordinatorState, IntentRecord, SubTopic
from shopchat.services.catalog_service import tokenize

logger = get_logger("intent_service")

DIMENSION_PATTERNS = (
    re.compile(r"\b(dimensions?|size|how (big|long|wide|thick))\b"),
    re.compile(r"ขนาด|ไซส์|กว้างเท่า|ยาวเท่า|หนาเท่า|กี่มิล|กี่เมตร|กี่เซน"),
)

BUNDLE_SIZE_PATTERNS = (
    re.compile(r"\b(per (bundle|pack)|how many (pieces|pcs|units))\b"),
    re.compile(r"มัดละ|แพ็คละ|ห่อละ|กี่เส้น|กี่ชิ้น|กี่แผ่น|กี่ตัว"),
)

SUB_TOPIC_PATTERNS = (
    (SubTopic.DIMENSION, DIMENSION_PATTERNS),
    (SubTopic.BUNDLE_SIZE, BUNDLE_SIZE_PATTERNS),
)

CLARIFY_HINTS = {
    SubTopic.DIMENSION: "(ลูกค้าถามต่อเรื่องขนาด: กรุณาบอกขนาดของสินค้าที่ลูกค้าระบุ)",
    SubTopic.BUNDLE_SIZE: "(ลูกค้าถามต่อเรื่องจำนวนต่อมัด: กรุณาบอกจำนวนชิ้นต่อมัดของสินค้าที่ลูกค้าระบุ)",
}

FILLER_TOKENS = {"the", "one", "a", "an", "that", "this", "ค่ะ", "คะ", "ครับ", "นะ", "อัน", "อันนี้", "แบบ"}

GroupResolver = Callable[[str], Optional[str]]


def normalize_for_matching(text: str) -> str:
    """Casefold and collapse whitespace."""
    if not text:
        return ""
    normalized = text.strip().casefold()
    return re.sub(r"\s+", " ", normalized)


def detect_sub_topic(text: str) -> Optional[SubTopic]:
    normalized = normalize_for_matching(text)
    if not normalized:
        return None
    for topic, patterns in SUB_TOPIC_PATTERNS:
        if any(pattern.search(normalized) for pattern in patterns):
            return topic
    return None


def is_bare_reference(text: str) -> bool:
    """A short product mention with no sub-topic question of its own."""
    if detect_sub_topic(text) is not None:
        return False
    return any(token not in FILLER_TOKENS for token in tokenize(text))


class IntentCarryOverStore:
    """One-turn memory of the clarifying sub-topic the previous turn asked about.

    Every evaluation removes the stored record, so a record can influence at
    most the turn right after the one that created it.
    """

    def __init__(
        self,
        state: CoordinatorState,
        group_resolver: GroupResolver,
        ttl_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._records = state.intents
        self._resolve_group = group_resolver
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def _take(self, key: str) -> Optional[IntentRecord]:
        with self._lock:
            record = self._records.pop(key, None)
        if record is None:
            return None
        if self._clock() - record.created_at > self._ttl_seconds:
            return None
        return record

    def _store(self, record: IntentRecord) -> None:
        with self._lock:
            self._records[record.key] = record

    def discard(self, key: str) -> bool:
        """Forget any pending sub-topic for the key. Returns True if one was stored."""
        with self._lock:
            return self._records.pop(key, None) is not None

    def record_if_asked(self, key: str, batch: List[str]) -> List[str]:
        """Record or apply a carried-over sub-topic; returns the batch to dispatch."""
        if not batch:
            self._take(key)
            return batch

        last = batch[-1]
        previous = self._take(key)
        topic = detect_sub_topic(last)

        if topic is not None:
            group = self._resolve_group(last)
            if group:
                self._store(IntentRecord(key=key, topic=topic, group=group, created_at=self._clock()))
                logger.debug(
                    "Intent recorded",
                    extra={"context": {"conversation_key": key, "topic": topic.value, "group": group}},
                )
            return batch

        if previous is None:
            return batch

        group = self._resolve_group(last)
        if group is None or group != previous.group or not is_bare_reference(last):
            logger.debug(
                "Intent dropped",
                extra={"context": {"conversation_key": key, "topic": previous.topic.value, "group": group}},
            )
            return batch

        logger.info(
            "Intent carried over",
            extra={"context": {"conversation_key": key, "topic": previous.topic.value, "group": group}},
        )
        return [*batch, CLARIFY_HINTS[previous.topic]]
