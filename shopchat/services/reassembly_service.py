from typing import List, Optional

from pydantic import BaseModel, ValidationError

from shopchat.logging_config import get_logger
from shopchat.services.dispatch_service import BoundedDispatcher, DispatchRequest
from shopchat.services.llm import DispatchError

logger = get_logger("reassembly_service")

REASSEMBLE_PROMPT = """You are a Thai conversation normalizer for a shop chat.
Input: multiple raw message fragments from a customer.
Goal: merge them into ONE structured JSON capturing products, quantity and follow-up questions.

Rules:
- Do NOT invent products or numbers.
- If a quantity has a unit (เส้น/ตัว/กิโล etc.), keep it.
- If no product is clearly stated, leave items empty and put the text into followups.
- Keep delivery/payment/stock questions as followups.
- Output ONLY minified JSON. No markdown.
JSON schema:
{"merged_text": "string", "items": [{"product": "string", "qty": number|null, "unit": "string|null"}], "followups": ["string"]}"""

HISTORY_WINDOW = 4


class ReassembledItem(BaseModel):
    product: str = ""
    qty: Optional[float] = None
    unit: Optional[str] = None

    def describe(self) -> str:
        qty = ""
        if self.qty is not None:
            qty = f" {int(self.qty) if float(self.qty).is_integer() else self.qty}"
        unit = f" {self.unit}" if self.unit else ""
        return f"{self.product}{qty}{unit}".strip()


class ReassembledTurn(BaseModel):
    merged_text: str
    items: List[ReassembledItem] = []
    followups: List[str] = []

    def for_assistant(self, fragments: List[str]) -> str:
        merged = self.merged_text or " / ".join(fragments)
        parts = [item.describe() for item in self.items]
        parts = [part for part in parts if part]
        if not parts:
            return merged
        if self.followups:
            parts.extend(self.followups)
        return " / ".join(parts)


def heuristic_turn(fragments: List[str]) -> ReassembledTurn:
    text = " / ".join(fragments).strip()
    return ReassembledTurn(merged_text=text, items=[], followups=[text] if text else [])


def _strip_code_fence(content: str) -> str:
    stripped = content.strip()
    if stripped.startswith("```"):
        stripped = stripped.strip("`")
        if stripped.lower().startswith("json"):
            stripped = stripped[4:]
    return stripped.strip()


async def reassemble(
    dispatcher: BoundedDispatcher,
    fragments: List[str],
    history: Optional[List[dict]] = None,
    candidates: Optional[List[str]] = None,
) -> ReassembledTurn:
    """Merge a burst into one structured turn; falls back to a plain join on any failure."""
    if not fragments:
        return heuristic_turn([])

    user = "\n".join(f"[{i}] {fragment}" for i, fragment in enumerate(fragments, 1))
    messages = [
        {"role": "system", "content": REASSEMBLE_PROMPT},
        *(history or [])[-HISTORY_WINDOW:],
        {"role": "user", "content": user},
    ]
    request = DispatchRequest.build(messages, temperature=0.2, purpose="reassemble")

    try:
        response = await dispatcher.dispatch(request, candidates)
    except DispatchError as e:
        logger.warning(f"Reassembler failed, using heuristic: {e}")
        return heuristic_turn(fragments)

    try:
        return ReassembledTurn.model_validate_json(_strip_code_fence(response.content))
    except ValidationError as e:
        logger.warning(f"Reassembler returned invalid JSON, using heuristic: {e.error_count()} errors")
        return heuristic_turn(fragments)
