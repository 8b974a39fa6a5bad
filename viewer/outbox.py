"""Queued, retried delivery of consent events."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from observability import context, log_exc, record_consent_delivery

from .client import ConsentDeliveryError
from .session import ConsentEvent


class ConsentPoster(Protocol):
    async def post_consent(self, payload: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class ConsentDelivery:
    event: ConsentEvent
    status: str = "pending"
    attempts: int = 0
    last_error: str | None = None
    response: dict[str, Any] | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def payload(self) -> dict[str, Any]:
        return self.event.to_payload()


DeliveryListener = Callable[[ConsentDelivery], Any]


class ConsentOutbox:
    """Deliver consent events in submission order with exponential backoff."""

    STATUSES = {"pending", "sent", "failed"}

    def __init__(
        self,
        poster: ConsentPoster,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._poster = poster
        self.max_attempts = max(1, max_attempts)
        self.base_delay = max(0.0, base_delay)
        self.max_delay = max(self.base_delay, max_delay)
        self._sleep = sleep
        self._queue: asyncio.Queue[ConsentDelivery | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._listeners: list[DeliveryListener] = []
        self.deliveries: list[ConsentDelivery] = []

    @property
    def running(self) -> bool:
        return self._worker is not None

    def add_listener(self, listener: DeliveryListener) -> None:
        self._listeners.append(listener)

    def submit(self, event: ConsentEvent) -> ConsentDelivery:
        delivery = ConsentDelivery(event=event)
        self.deliveries.append(delivery)
        self._queue.put_nowait(delivery)
        logging.info("CONSENT queued type=%s", event.consent_type)
        return delivery

    def pending(self) -> list[ConsentDelivery]:
        return [delivery for delivery in self.deliveries if delivery.status == "pending"]

    def failed(self) -> list[ConsentDelivery]:
        return [delivery for delivery in self.deliveries if delivery.status == "failed"]

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._worker_loop())

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self._queue.put(None)
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

    async def drain(self) -> None:
        """Wait until every submitted event is either sent or failed."""

        await self._queue.join()

    def retry_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def _worker_loop(self) -> None:
        try:
            while True:
                delivery = await self._queue.get()
                try:
                    if delivery is None:
                        break
                    await self._deliver(delivery)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            pass

    async def _deliver(self, delivery: ConsentDelivery) -> None:
        consent_type = delivery.event.consent_type
        with context(consent_type=consent_type):
            while True:
                delivery.attempts += 1
                try:
                    delivery.response = await self._poster.post_consent(delivery.payload)
                except ConsentDeliveryError as exc:
                    delivery.last_error = str(exc)
                    if not exc.retryable or delivery.attempts >= self.max_attempts:
                        log_exc("CONSENT delivery failed", exc)
                        self._finish(delivery, "failed")
                        return
                    delay = self.retry_delay(delivery.attempts)
                    logging.warning(
                        "CONSENT delivery attempt %s failed, retrying in %.1fs: %s",
                        delivery.attempts,
                        delay,
                        exc,
                    )
                    record_consent_delivery("retry")
                    await self._sleep(delay)
                except Exception as exc:
                    delivery.last_error = str(exc)
                    log_exc("CONSENT delivery crashed", exc)
                    self._finish(delivery, "failed")
                    return
                else:
                    delivery.last_error = None
                    logging.info(
                        "CONSENT delivered type=%s attempts=%s",
                        consent_type,
                        delivery.attempts,
                    )
                    self._finish(delivery, "sent")
                    return

    def _finish(self, delivery: ConsentDelivery, status: str) -> None:
        delivery.status = status
        delivery.done.set()
        record_consent_delivery(status)
        for listener in self._listeners:
            try:
                listener(delivery)
            except Exception:
                logging.exception("CONSENT listener failed")
