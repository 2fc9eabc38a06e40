#!/usr/bin/env python3
"""
Watch Supervisor

Keeps one push subscription alive for a single event category and feeds its
deliveries through decode, filter, record and notify.

State machine:
    SUBSCRIBING -> LISTENING -> BACKOFF -> SUBSCRIBING ...
    any state -> STOPPED once the stop event is set or the task is cancelled

There is no retry limit; a failed subscribe or a broken stream always leads
to a fixed backoff and a fresh subscription.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

DEFAULT_BACKOFF_SECONDS = 1.0


class WatchState(Enum):
    SUBSCRIBING = "subscribing"
    LISTENING = "listening"
    BACKOFF = "backoff"
    STOPPED = "stopped"


def _accept_all(item: Any) -> bool:
    return True


@dataclass
class WatchCategory:
    """Everything that differs between two watched event categories"""
    name: str
    subscribe: Callable[[], Awaitable[Any]]
    collect: Callable[[Any], Awaitable[List[Any]]]
    format: Callable[[Any], str]
    accept: Callable[[Any], bool] = _accept_all
    record: Optional[Callable[[Any], None]] = None


def above_threshold(amount_of: Callable[[Any], float], minimum: float) -> Callable[[Any], bool]:
    """Predicate passing items whose amount is strictly greater than minimum"""
    def accept(item: Any) -> bool:
        return amount_of(item) > minimum
    return accept


class WatchSupervisor:
    def __init__(
        self,
        category: WatchCategory,
        notify: Callable[[str], None],
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self.category = category
        self.notify = notify
        self.backoff_seconds = backoff_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.state = WatchState.STOPPED
        self.resubscribe_count = 0
        self.notified_count = 0

    @property
    def name(self) -> str:
        return self.category.name

    async def run(self, stop: asyncio.Event) -> None:
        self.logger.info(f"watch {self.name}")
        try:
            while not stop.is_set():
                self.state = WatchState.SUBSCRIBING
                try:
                    subscription = await self._subscribe(stop)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.warning(f"reset {self.name} subscription: {e}")
                    if await self._backoff(stop):
                        break
                    continue
                if subscription is None:
                    break

                self.state = WatchState.LISTENING
                try:
                    error = await self._listen(subscription, stop)
                finally:
                    await self._close(subscription)

                if error is None:
                    break
                self.logger.warning(f"reset {self.name} subscription: {error}")
                if await self._backoff(stop):
                    break
        finally:
            self.state = WatchState.STOPPED
            self.logger.info(f"stopped watching {self.name}")

    async def _subscribe(self, stop: asyncio.Event):
        """Open a subscription; None when stop was requested first"""
        sub_task = asyncio.ensure_future(self.category.subscribe())
        stop_task = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({sub_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not sub_task.done():
                # a cancelled subscribe closes its half-open socket
                sub_task.cancel()
                await asyncio.gather(sub_task, return_exceptions=True)

        if sub_task.cancelled():
            return None
        subscription = sub_task.result()
        if stop.is_set():
            await self._close(subscription)
            return None
        return subscription

    async def _listen(self, subscription, stop: asyncio.Event) -> Optional[BaseException]:
        """Process deliveries until stop (returns None) or a stream error (returns it)"""
        stop_task = asyncio.ensure_future(stop.wait())
        get_task = None
        try:
            while True:
                get_task = asyncio.ensure_future(subscription.queue.get())
                done, _ = await asyncio.wait(
                    {get_task, subscription.error, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_task in done:
                    return None
                if get_task in done:
                    await self._handle(get_task.result())
                    continue
                return subscription.error.result()
        finally:
            stop_task.cancel()
            if get_task is not None and not get_task.done():
                get_task.cancel()

    async def _handle(self, raw: Any) -> None:
        try:
            items = await self.category.collect(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"{self.name}: dropping undecodable event: {e}")
            return

        for item in items:
            if not self.category.accept(item):
                continue
            if self.category.record is not None:
                self.category.record(item)
            details = item.as_dict() if hasattr(item, 'as_dict') else item
            self.logger.debug(f"new {self.name} event: {details}")
            await self._notify(self.category.format(item))

    async def _notify(self, message: str) -> None:
        try:
            await asyncio.to_thread(self.notify, message)
            self.notified_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"{self.name}: notification failed: {e}")

    async def _backoff(self, stop: asyncio.Event) -> bool:
        """Sleep the backoff interval; True when stop was requested meanwhile"""
        self.state = WatchState.BACKOFF
        self.resubscribe_count += 1
        try:
            await asyncio.wait_for(stop.wait(), timeout=self.backoff_seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _close(self, subscription) -> None:
        try:
            await subscription.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.debug(f"{self.name}: error closing subscription: {e}")
