import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

from shopchat.config import Settings
from shopchat.logging_config import get_logger
from shopchat.models import CoordinatorState
from shopchat.schemas.line import InboundMessage
from shopchat.services.catalog_service import Catalog
from shopchat.services.dispatch_service import BoundedDispatcher
from shopchat.services.fragment_service import FragmentAggregator
from shopchat.services.history_service import HistoryStore, InMemoryHistoryStore, RedisHistoryStore
from shopchat.services.intent_service import IntentCarryOverStore
from shopchat.services.line_service import LineService
from shopchat.services.llm import LLMProvider, OpenRouterProvider
from shopchat.services.takeover_service import TakeoverGate
from shopchat.services.turn_service import TurnOrchestrator, keyword_topic_change

logger = get_logger("coordinator")


class Coordinator:
    """Everything that holds per-conversation state for one running instance."""

    def __init__(
        self,
        state: CoordinatorState,
        gate: TakeoverGate,
        carryover: IntentCarryOverStore,
        dispatcher: BoundedDispatcher,
        orchestrator: TurnOrchestrator,
        aggregator: FragmentAggregator,
        history: HistoryStore,
        channel: LineService,
        provider: LLMProvider,
        catalog: Catalog,
    ):
        self.state = state
        self.gate = gate
        self.carryover = carryover
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.aggregator = aggregator
        self.history = history
        self.channel = channel
        self.provider = provider
        self.catalog = catalog

    async def accept(self, message: InboundMessage) -> bool:
        """Feed one inbound text into the aggregator. Returns False if it was ignored."""
        key = (message.conversation_key or "").strip()
        text = (message.text or "").strip()
        if not key or not text:
            return False

        logger.info("Inbound text", extra={"context": {"conversation_key": key, "chars": len(text)}})
        self.channel.remember_reply_token(key, message.reply_token)
        # Buffer before the first await so fragments keep webhook arrival order.
        self.aggregator.submit(key, text)
        try:
            await self.history.add_user(key)
        except Exception as e:
            logger.warning(f"User registry unavailable: {e}", extra={"context": {"conversation_key": key}})
        return True

    async def aclose(self, flush: bool = False) -> None:
        await self.aggregator.aclose(flush=flush)
        await self.provider.aclose()
        await self.channel.aclose()
        await self.history.aclose()
        self.state.clear()


def load_catalog(path: str) -> Catalog:
    if not path or not Path(path).is_file():
        logger.warning(f"Catalog file not found: {path}")
        return Catalog()
    try:
        return Catalog.load(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Failed to load catalog {path}: {e}")
        return Catalog()


def build_history_store(settings: Settings) -> HistoryStore:
    if settings.redis_url:
        return RedisHistoryStore.from_url(
            settings.redis_url,
            ttl_seconds=settings.chat_ttl_seconds,
            max_messages=settings.history_max_messages,
        )
    logger.warning("REDIS_URL is not set, chat history is kept in memory")
    return InMemoryHistoryStore(max_messages=settings.history_max_messages)


def build_coordinator(
    settings: Settings,
    *,
    provider: Optional[LLMProvider] = None,
    history: Optional[HistoryStore] = None,
    channel: Optional[LineService] = None,
    catalog: Optional[Catalog] = None,
    state: Optional[CoordinatorState] = None,
    sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Coordinator:
    state = state or CoordinatorState()
    provider = provider or OpenRouterProvider(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_url,
    )
    history = history or build_history_store(settings)
    channel = channel or LineService(settings.line_access_token)
    catalog = catalog if catalog is not None else load_catalog(settings.products_csv)

    gate = TakeoverGate(state)
    carryover = IntentCarryOverStore(
        state,
        group_resolver=catalog.resolve_group,
        ttl_seconds=settings.intent_ttl_seconds,
        clock=clock,
    )
    dispatcher = BoundedDispatcher(
        provider,
        settings.candidate_models(),
        concurrency=settings.dispatch_concurrency,
        timeout_seconds=settings.dispatch_timeout_seconds,
        backoff_min_ms=settings.rate_limit_backoff_min_ms,
        backoff_max_ms=settings.rate_limit_backoff_max_ms,
        sleep_func=sleep_func,
    )
    orchestrator = TurnOrchestrator(
        gate,
        carryover,
        dispatcher,
        history,
        channel,
        catalog,
        fallback_message=settings.fallback_message,
        temperature=settings.temperature,
        topic_change=keyword_topic_change(catalog.resolve_group),
        reassembler_enabled=settings.reassembler_enabled,
        listing_terms=settings.listing_term_list(),
    )
    aggregator = FragmentAggregator(
        state,
        orchestrator.handle_batch,
        silence_seconds=settings.silence_seconds,
        max_window_seconds=settings.max_window_seconds,
        max_fragments=settings.max_fragments,
        clock=clock,
        sleep_func=sleep_func,
    )
    return Coordinator(
        state=state,
        gate=gate,
        carryover=carryover,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        aggregator=aggregator,
        history=history,
        channel=channel,
        provider=provider,
        catalog=catalog,
    )
