import asyncio
import re
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Sequence

from shopchat.logging_config import LoggerAdapter, get_logger
from shopchat.services.alert_service import alert_error
from shopchat.services.catalog_service import Catalog, normalize_name
from shopchat.services.dispatch_service import BoundedDispatcher, DispatchRequest
from shopchat.services.history_service import HistoryStore
from shopchat.services.intent_service import IntentCarryOverStore, normalize_for_matching
from shopchat.services.line_service import LineService
from shopchat.services.llm import DispatchAbortedError, DispatchError
from shopchat.services.reassembly_service import ReassembledTurn, reassemble
from shopchat.services.result import Result
from shopchat.services.takeover_service import TakeoverGate

logger = get_logger("turn_service")

SYSTEM_PROMPT = """You are a friendly Thai shop assistant chatbot. You help customers with product inquiries in a natural, conversational way.
Answer in Thai, concisely and politely. Quote prices with the unit from the catalog. If a price is missing, ask the customer to call 088-277-0145.

PRODUCT CATALOG:
{catalog}"""

TOPIC_CHANGE_RE = re.compile(
    r"จัดส่ง|ส่งของ|ค่าส่ง|ขนส่ง|lalamove|ที่อยู่|โลเคชั่น|พิกัด|โอนเงิน|ชำระ|จ่ายเงิน|เก็บเงินปลายทาง"
    r"|\b(delivery|shipping|location|address|payment|pay)\b"
)

TopicChangePolicy = Callable[[List[dict], List[str]], bool]


class TurnOutcome(str, Enum):
    SUPPRESSED = "suppressed"
    REPLIED = "replied"
    LISTED = "listed"
    FALLBACK = "fallback"


def no_topic_change(history: List[dict], batch: List[str]) -> bool:
    return False


def keyword_topic_change(resolve_group: Callable[[str], Optional[str]]) -> TopicChangePolicy:
    """Reset history when a product discussion turns into a delivery/location/payment question."""

    def policy(history: List[dict], batch: List[str]) -> bool:
        last_user = next((m.get("content", "") for m in reversed(history) if m.get("role") == "user"), "")
        if not last_user or resolve_group(last_user) is None:
            return False
        text = " ".join(batch)
        if resolve_group(text) is not None:
            return False
        return bool(TOPIC_CHANGE_RE.search(normalize_for_matching(text)))

    return policy


class _KeyLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TurnOrchestrator:
    def __init__(
        self,
        gate: TakeoverGate,
        carryover: IntentCarryOverStore,
        dispatcher: BoundedDispatcher,
        history: HistoryStore,
        channel: LineService,
        catalog: Catalog,
        *,
        fallback_message: str,
        candidates: Optional[Sequence[str]] = None,
        temperature: float = 0.7,
        topic_change: TopicChangePolicy = no_topic_change,
        reassembler_enabled: bool = False,
        listing_terms: Sequence[str] = (),
    ):
        self._gate = gate
        self._carryover = carryover
        self._dispatcher = dispatcher
        self._history = history
        self._channel = channel
        self._catalog = catalog
        self._fallback_message = fallback_message
        self._candidates = list(candidates) if candidates else None
        self._temperature = temperature
        self._topic_change = topic_change
        self._reassembler_enabled = reassembler_enabled
        self._listing_terms = sorted(listing_terms, key=lambda t: len(normalize_name(t)), reverse=True)
        self._locks: dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def _turn_lock(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(key, _KeyLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(catalog=self._catalog.render() or "-")

    async def _load_history(self, key: str, log: LoggerAdapter) -> List[dict]:
        try:
            stored = await self._history.get(key)
        except Exception as e:
            log.warning(f"History read failed, continuing without it: {e}")
            return []
        history = [
            {"role": m["role"], "content": m["content"]}
            for m in stored or []
            if isinstance(m, dict) and isinstance(m.get("role"), str) and isinstance(m.get("content"), str)
        ]
        if len(history) != len(stored or []):
            log.warning("Dropped malformed history entries", context={"dropped": len(stored) - len(history)})
        return history

    async def _save_history(self, key: str, history: List[dict], log: LoggerAdapter) -> None:
        try:
            await self._history.set(key, history)
        except Exception as e:
            log.warning(f"History write failed: {e}")

    def _topic_changed(self, history: List[dict], batch: List[str], log: LoggerAdapter) -> bool:
        try:
            return self._topic_change(history, batch)
        except Exception as e:
            log.warning(f"Topic-change policy failed, keeping history: {e}")
            return False

    async def _merge(self, batch: List[str], history: List[dict]) -> tuple[str, Optional[ReassembledTurn]]:
        if not self._reassembler_enabled:
            return " / ".join(batch), None
        turn = await reassemble(self._dispatcher, batch, history, self._candidates)
        return turn.for_assistant(batch), turn

    def list_category(self, text: str) -> Optional[str]:
        """Deterministic listing for a configured category term, longest term first."""
        normalized = normalize_name(text)
        for term in self._listing_terms:
            if normalize_name(term) not in normalized:
                continue
            matches = self._catalog.list_by_term(term)
            if not matches:
                continue
            lines = "\n".join(product.format_line() for product in matches)
            return f"ในร้านเรามี{term} {len(matches)} แบบนะคะ\n{lines}"
        return None

    async def generate_reply(self, key: str, merged_text: str, history: List[dict]) -> Result[str]:
        log = LoggerAdapter(logger, {"conversation_key": key})
        try:
            messages = [
                {"role": "system", "content": self.system_prompt()},
                *history,
                {"role": "user", "content": merged_text},
            ]
            request = DispatchRequest.build(messages, temperature=self._temperature)
            response = await self._dispatcher.dispatch(request, self._candidates)
        except DispatchError as e:
            last = e.last_error
            context = {
                "candidate": last.candidate if last else None,
                "error_kind": last.kind.value if last else None,
            }
            code = "dispatch_aborted" if isinstance(e, DispatchAbortedError) else "dispatch_exhausted"
            log.error(f"Dispatch failed: {e}", context={**context, "error_code": code})
            await alert_error("Reply dispatch failed", {"conversation_key": key, "error_code": code, **context})
            return Result.failure(str(e), code, cause=e)
        except Exception as e:
            log.error(f"AI generation error: {e}", exc_info=True)
            await alert_error("AI generation failed", {"conversation_key": key, "error": str(e)})
            return Result.failure(str(e), "ai_error", cause=e)

        log.info("Reply generated", context={"candidate": response.candidate, "attempts": response.attempts})
        return Result.success(response.content)

    async def handle_batch(self, key: str, fragments: List[str]) -> TurnOutcome:
        """Run one aggregated turn for a conversation."""
        log = LoggerAdapter(logger, {"conversation_key": key})
        async with self._turn_lock(key):
            # 1. Operator took over: drop silently
            if self._gate.is_suspended(key):
                # The operator answers this turn, so a pending clarification no longer applies.
                self._carryover.discard(key)
                log.info("Turn suppressed by takeover", context={"fragments": len(fragments)})
                return TurnOutcome.SUPPRESSED

            # 2. Fold in the previous turn's clarifying sub-topic
            batch = self._carryover.record_if_asked(key, list(fragments))

            # 3. History, with the topic-change reset hook
            history = await self._load_history(key, log)
            if history and self._topic_changed(history, batch, log):
                log.info("Topic changed, history reset")
                history = []

            merged_text, reassembled = await self._merge(batch, history)

            # 4. Category listing short-circuits the model
            listing = self.list_category(merged_text)
            if listing:
                history.extend({"role": "user", "content": f} for f in fragments)
                history.append({"role": "assistant", "content": listing})
                await self._save_history(key, history, log)
                await self._channel.send_text(key, listing)
                return TurnOutcome.LISTED

            # 5. Dispatch
            result = await self.generate_reply(key, merged_text, history)
            if not result.ok:
                sent = await self._channel.send_text(key, self._fallback_message)
                log.warning("Fallback reply sent", context={"sent": sent, "error_code": result.error_code})
                return TurnOutcome.FALLBACK

            # 6. Persist and emit
            reply = result.value
            history.extend({"role": "user", "content": f} for f in fragments)
            if reassembled is not None:
                history.append({"role": "user", "content": f"(รวมข้อความ JSON): {reassembled.model_dump_json()}"})
                history.append({"role": "user", "content": f"(รวมข้อความพร้อมใช้งาน): {merged_text}"})
            history.append({"role": "assistant", "content": reply})
            await self._save_history(key, history, log)

            sent = await self._channel.send_text(key, reply)
            log.info("Reply emitted", context={"sent": sent, "fragments": len(fragments)})
            return TurnOutcome.REPLIED
