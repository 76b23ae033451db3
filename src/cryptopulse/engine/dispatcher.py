"""Signal delivery: de-duplication, fire-and-forget fan-out, retries and dead letters."""

import asyncio
import time
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence

import structlog

from cryptopulse.config.settings import DispatcherSettings
from cryptopulse.monitoring.logger import DeadLetterLog
from cryptopulse.strategies.base import Signal

logger = structlog.get_logger()

DedupKey = tuple[str, str, int]  # (strategy_id, symbol, time bucket)


class SignalConsumer(Protocol):
    """Anything that accepts signals: broadcasters, executors, notifiers."""

    name: str

    async def deliver(self, signal: Signal) -> None: ...


@dataclass(frozen=True)
class DispatchReceipt:
    """Acknowledgement returned as soon as a signal is accepted or suppressed."""

    signal_id: str
    accepted: bool
    duplicate: bool = False
    consumers: int = 0


class SignalBroadcaster:
    """
    Fans signals out to per-user async queues.

    Backs ``get_signal_stream(user_id)``. Signals without a user go to every
    open stream. Each listener is served independently: when one listener's
    queue is full that listener misses the signal, which is counted, logged
    and written to the dead-letter log, while the others still receive it.
    ``deliver`` never raises for a lagging listener, so a retry can never
    hand the same signal to a listener twice.
    """

    name = "broadcaster"

    def __init__(self, max_queue_size: int = 100, dead_letters: DeadLetterLog | None = None):
        self.max_queue_size = max_queue_size
        self.dead_letters = dead_letters
        self.dropped: Counter[str] = Counter()
        self._queues: dict[str, list[asyncio.Queue[Signal]]] = defaultdict(list)

    async def deliver(self, signal: Signal) -> None:
        if signal.user_id is None:
            targets = [(user_id, q) for user_id, queues in self._queues.items() for q in queues]
        else:
            targets = [(signal.user_id, q) for q in self._queues.get(signal.user_id, [])]
        for user_id, queue in targets:
            try:
                queue.put_nowait(signal)
            except asyncio.QueueFull:
                self._drop(signal, user_id)

    def _drop(self, signal: Signal, user_id: str) -> None:
        self.dropped[user_id] += 1
        logger.warning(
            "Signal stream listener lagging, signal dropped",
            signal_id=signal.signal_id,
            user_id=user_id,
            max_queue_size=self.max_queue_size,
        )
        if self.dead_letters is not None:
            self.dead_letters.record(signal, f"{self.name}:{user_id}", 1, "listener queue full")

    async def stream(self, user_id: str) -> AsyncIterator[Signal]:
        """Yield signals for a user until the consumer stops iterating."""
        queue: asyncio.Queue[Signal] = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues[user_id].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues[user_id].remove(queue)
            if not self._queues[user_id]:
                del self._queues[user_id]

    @property
    def listeners(self) -> int:
        return sum(len(queues) for queues in self._queues.values())


class DryRunExecutor:
    """Logs the order a signal would place. Order routing is out of process."""

    name = "dry_run"

    def __init__(self) -> None:
        self.orders: list[dict[str, Any]] = []

    async def deliver(self, signal: Signal) -> None:
        order = {
            "signal_id": signal.signal_id,
            "exchange": signal.exchange,
            "symbol": signal.symbol,
            "side": signal.action.value,
            "quantity": signal.suggested_quantity,
            "price": signal.suggested_price,
            "stop_loss": signal.stop_loss_price,
            "take_profit": signal.take_profit_price,
        }
        self.orders.append(order)
        logger.info("[DRY RUN] Would place order", **order)


class SignalDispatcher:
    """
    Delivers signals to consumers at most once per strategy, symbol and time bucket.

    ``dispatch`` acknowledges immediately; each consumer is served by a
    background task that retries failures with linear backoff and writes the
    signal to the dead-letter log when retries run out.

    Example:
        dispatcher = SignalDispatcher([broadcaster, DryRunExecutor()], dead_letters)
        receipt = await dispatcher.dispatch(signal)
        ...
        await dispatcher.close()
    """

    def __init__(
        self,
        consumers: Sequence[SignalConsumer],
        dead_letters: DeadLetterLog | None = None,
        bucket_seconds: int = 60,
        dedup_window_seconds: float = 300.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize dispatcher.

        Args:
            consumers: Signal consumers
            dead_letters: Log for undeliverable signals
            bucket_seconds: Width of the dedup time bucket
            dedup_window_seconds: How long a dedup key is remembered
            max_retries: Retries after the first failed delivery
            retry_backoff: Delay unit; retry k waits k * retry_backoff
            clock: Monotonic clock for dedup expiry
            sleep: Awaitable sleep function
        """
        self.consumers = list(consumers)
        self.dead_letters = dead_letters
        self.bucket_seconds = bucket_seconds
        self.dedup_window_seconds = dedup_window_seconds
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._clock = clock
        self._sleep = sleep
        self._seen: dict[DedupKey, float] = {}
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self.dispatched = 0
        self.suppressed = 0
        self.dead_lettered = 0

    @classmethod
    def from_settings(
        cls, consumers: Sequence[SignalConsumer], settings: DispatcherSettings
    ) -> "SignalDispatcher":
        return cls(
            consumers,
            DeadLetterLog(settings.dead_letter_dir),
            bucket_seconds=settings.bucket_seconds,
            dedup_window_seconds=settings.dedup_window_seconds,
            max_retries=settings.max_retries,
            retry_backoff=settings.retry_backoff,
        )

    def dedup_key(self, signal: Signal) -> DedupKey:
        generated = signal.generated_at.astimezone(timezone.utc)
        bucket = int(generated.timestamp()) // self.bucket_seconds
        return (signal.strategy_id, signal.symbol, bucket)

    async def dispatch(self, signal: Signal) -> DispatchReceipt:
        """
        Accept a signal for delivery.

        Returns:
            DispatchReceipt; ``duplicate`` is set when the signal was suppressed
        """
        key = self.dedup_key(signal)
        async with self._lock:
            now = self._clock()
            self._expire(now)
            if key in self._seen:
                self.suppressed += 1
                logger.info(
                    "Duplicate signal suppressed",
                    signal_id=signal.signal_id,
                    strategy_id=signal.strategy_id,
                    symbol=signal.symbol,
                )
                return DispatchReceipt(signal.signal_id, accepted=False, duplicate=True)
            self._seen[key] = now

        self.dispatched += 1
        for consumer in self.consumers:
            task = asyncio.create_task(self._deliver(consumer, signal))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return DispatchReceipt(signal.signal_id, accepted=True, consumers=len(self.consumers))

    def _expire(self, now: float) -> None:
        expired = [k for k, seen in self._seen.items() if now - seen >= self.dedup_window_seconds]
        for k in expired:
            del self._seen[k]

    async def _deliver(self, consumer: SignalConsumer, signal: Signal) -> None:
        attempt = 0
        while True:
            try:
                await consumer.deliver(signal)
                return
            except Exception as e:
                attempt += 1
                if attempt > self.max_retries:
                    self.dead_lettered += 1
                    if self.dead_letters is not None:
                        self.dead_letters.record(signal, consumer.name, attempt, str(e))
                    else:
                        logger.error(
                            "Signal delivery failed",
                            signal_id=signal.signal_id,
                            consumer=consumer.name,
                            attempts=attempt,
                            error=str(e),
                        )
                    return

                delay = attempt * self.retry_backoff
                logger.warning(
                    "Signal delivery failed, retrying",
                    signal_id=signal.signal_id,
                    consumer=consumer.name,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
