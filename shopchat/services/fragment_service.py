import asyncio
import time
from typing import Awaitable, Callable, List

from shopchat.logging_config import get_logger
from shopchat.models import CoordinatorState, FragmentBuffer

logger = get_logger("fragment_service")

BatchHandler = Callable[[str, List[str]], Awaitable[None]]


class FragmentAggregator:
    """
    Collect bursts of short messages into one turn per conversation.

    Every fragment restarts a silence countdown; the batch fires when the
    countdown runs out, or right away once the burst hits the fragment cap or
    has been open longer than the maximum window. A fired buffer is removed
    from the table before the handler runs, so the next fragment for the same
    key always starts a fresh batch.
    """

    def __init__(
        self,
        state: CoordinatorState,
        handler: BatchHandler,
        *,
        silence_seconds: float = 15.0,
        max_window_seconds: float = 60.0,
        max_fragments: int = 16,
        clock: Callable[[], float] = time.monotonic,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_fragments <= 0:
            raise ValueError("max_fragments must be > 0")
        self._buffers = state.buffers
        self._handler = handler
        self._silence_seconds = silence_seconds
        self._max_window_seconds = max_window_seconds
        self._max_fragments = max_fragments
        self._clock = clock
        self._sleep = sleep_func
        self._handler_tasks: set[asyncio.Task] = set()

    def submit(self, key: str, fragment: str) -> None:
        """Buffer a fragment. Must be called from the event loop; never blocks."""
        now = self._clock()
        buffer = self._buffers.get(key)
        if buffer is None:
            buffer = FragmentBuffer(key=key, started_at=now)
            self._buffers[key] = buffer
        buffer.fragments.append(fragment)

        if len(buffer.fragments) >= self._max_fragments:
            self._fire(key, "max_fragments")
            return
        if now - buffer.started_at >= self._max_window_seconds:
            self._fire(key, "max_window")
            return

        buffer.cancel_timer()
        buffer.timer = asyncio.get_running_loop().create_task(self._fire_after_silence(key, buffer))

    def pending(self, key: str) -> List[str]:
        buffer = self._buffers.get(key)
        return list(buffer.fragments) if buffer else []

    def flush(self, key: str) -> bool:
        """Fire a key's buffer now. Returns False if nothing was buffered."""
        return self._fire(key, "flush")

    async def _fire_after_silence(self, key: str, buffer: FragmentBuffer) -> None:
        await self._sleep(self._silence_seconds)
        if self._buffers.get(key) is not buffer:
            return
        buffer.timer = None
        self._fire(key, "silence")

    def _fire(self, key: str, reason: str) -> bool:
        buffer = self._buffers.pop(key, None)
        if buffer is None:
            return False
        buffer.cancel_timer()
        fragments = list(buffer.fragments)

        logger.info(
            "Batch ready",
            extra={"context": {"conversation_key": key, "fragments": len(fragments), "reason": reason}},
        )
        task = asyncio.get_running_loop().create_task(self._run_handler(key, fragments))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)
        return True

    async def _run_handler(self, key: str, fragments: List[str]) -> None:
        try:
            await self._handler(key, fragments)
        except Exception as e:
            logger.error(
                f"Batch handler failed: {e}",
                exc_info=True,
                extra={"context": {"conversation_key": key, "fragments": len(fragments)}},
            )

    async def wait_idle(self) -> None:
        """Wait until every handler started so far has finished."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def aclose(self, flush: bool = False) -> None:
        """Stop all timers. With flush=True pending bursts fire first instead of being dropped."""
        for key in list(self._buffers):
            if flush:
                self._fire(key, "shutdown")
            else:
                self._buffers.pop(key).cancel_timer()
        await self.wait_idle()
