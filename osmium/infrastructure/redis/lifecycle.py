"""
Redis Client Lifecycle

Connection lifecycle observers, reconnect backoff and graceful shutdown
for clients built by the connection factory.
"""

import asyncio
import logging
import signal
import weakref
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from redis.backoff import ExponentialBackoff

from ...constants import (
    RECONNECT_BACKOFF_BASE_SECONDS,
    RECONNECT_BACKOFF_CAP_SECONDS,
)
from ...core import tasks

logger = logging.getLogger(__name__)

LifecycleCallback = Callable[..., Any]


class ConnectionStatus(Enum):
    """Aggregate client status as reported by lifecycle events."""

    WAIT = "wait"  # Created, nothing attempted yet
    CONNECTING = "connecting"
    CONNECT = "connect"  # Socket open, handshake pending
    READY = "ready"  # Handshake done, accepting commands
    RECONNECTING = "reconnecting"
    CLOSE = "close"
    END = "end"  # Shut down, no further reconnects


class RedisLifecycleEvents:
    """
    Observer registry for Redis connection lifecycle events.

    Events: connect, ready, error, close, reconnecting, end.
    Callbacks receive the payload as keyword arguments, always including
    ``event``. Observer failures are logged and never reach the client.
    """

    EVENTS = ("connect", "ready", "error", "close", "reconnecting", "end")

    _STATUS_BY_EVENT = {
        "connect": ConnectionStatus.CONNECT,
        "ready": ConnectionStatus.READY,
        "close": ConnectionStatus.CLOSE,
        "reconnecting": ConnectionStatus.RECONNECTING,
        "end": ConnectionStatus.END,
    }

    def __init__(self, name: str = "redis", log_events: bool = True):
        self.name = name
        self.status = ConnectionStatus.WAIT
        self._observers: Dict[str, List[LifecycleCallback]] = {
            event: [] for event in self.EVENTS
        }
        if log_events:
            self._register_default_observers()

    def on(self, event: str, callback: LifecycleCallback) -> None:
        """Register a callback for a lifecycle event."""
        if event not in self._observers:
            raise ValueError(
                f"Unknown lifecycle event '{event}'. Expected one of: {self.EVENTS}"
            )
        self._observers[event].append(callback)

    def off(self, event: str, callback: LifecycleCallback) -> None:
        """Remove a previously registered callback."""
        try:
            self._observers[event].remove(callback)
        except (KeyError, ValueError):
            pass

    def mark_connecting(self) -> None:
        if self.status is not ConnectionStatus.END:
            self.status = ConnectionStatus.CONNECTING

    def emit(self, event: str, **payload: Any) -> None:
        """Update the tracked status and notify observers."""
        # Nothing but "end" may move the status once the client is shut down
        new_status = self._STATUS_BY_EVENT.get(event)
        if new_status is not None and (
            self.status is not ConnectionStatus.END or new_status is ConnectionStatus.END
        ):
            self.status = new_status

        for callback in list(self._observers.get(event, ())):
            try:
                callback(event=event, **payload)
            except Exception as e:
                logger.warning(
                    f"Redis lifecycle observer for '{event}' failed: {e}",
                    extra={"client": self.name, "event": event},
                )

    @property
    def is_active(self) -> bool:
        return self.status in (
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECT,
            ConnectionStatus.READY,
            ConnectionStatus.RECONNECTING,
        )

    def _register_default_observers(self) -> None:
        self.on("connect", self._log_connect)
        self.on("ready", self._log_ready)
        self.on("error", self._log_error)
        self.on("close", self._log_close)
        self.on("reconnecting", self._log_reconnecting)

    def _log_connect(self, **payload: Any) -> None:
        logger.info(
            "Redis connected successfully",
            extra={"client": self.name, "address": payload.get("address")},
        )

    def _log_ready(self, **payload: Any) -> None:
        logger.info(
            "Redis ready to accept commands",
            extra={"client": self.name, "address": payload.get("address")},
        )

    def _log_error(self, **payload: Any) -> None:
        logger.error(
            f"Redis error: {payload.get('error')}",
            extra={"client": self.name, "address": payload.get("address")},
        )

    def _log_close(self, **payload: Any) -> None:
        logger.info(
            "Redis connection closed",
            extra={"client": self.name, "address": payload.get("address")},
        )

    def _log_reconnecting(self, **payload: Any) -> None:
        logger.warning(
            f"Redis reconnecting (attempt {payload.get('attempt')}, "
            f"delay {payload.get('delay', 0):.3f}s)",
            extra={"client": self.name},
        )


class ReconnectBackoff(ExponentialBackoff):
    """Bounded exponential backoff that reports each retry as 'reconnecting'."""

    def __init__(
        self,
        lifecycle: RedisLifecycleEvents,
        cap: float = RECONNECT_BACKOFF_CAP_SECONDS,
        base: float = RECONNECT_BACKOFF_BASE_SECONDS,
    ):
        super().__init__(cap=cap, base=base)
        self._lifecycle = lifecycle

    def compute(self, failures: int) -> float:
        delay = super().compute(failures)
        self._lifecycle.emit("reconnecting", attempt=failures, delay=delay)
        return delay


class _SignalDispatcher:
    """
    Process-wide owner of the Redis shutdown signal handlers.

    The event loop keeps a single callback per signal, so every installed
    GracefulShutdown registers here instead of with the loop. The first
    signal shuts all registered clients down, puts back the handlers that
    were in place before the first registration and re-raises the signal
    against them.
    """

    def __init__(self):
        # hook -> signals it was installed for
        self._hooks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._original_handlers: Dict[signal.Signals, Any] = {}

    def signals_for(self, hook: "GracefulShutdown") -> Tuple[signal.Signals, ...]:
        return tuple(sorted(self._hooks.get(hook, ())))

    def register(
        self, hook: "GracefulShutdown", signals: Iterable[signal.Signals]
    ) -> bool:
        loop = asyncio.get_running_loop()
        if self._loop is not None and self._loop is not loop:
            # Handlers belong to a previous loop; its clients cannot be reached
            self.restore()
            self._hooks.clear()
        self._loop = loop

        registered = self._hooks.setdefault(hook, set())
        for sig in signals:
            if sig not in self._original_handlers:
                previous = signal.getsignal(sig)
                try:
                    loop.add_signal_handler(sig, self._dispatch, sig)
                except (NotImplementedError, RuntimeError, ValueError) as e:
                    logger.warning(
                        f"Cannot install Redis shutdown handler for {sig!r}: {e}"
                    )
                    continue
                self._original_handlers[sig] = previous
            registered.add(sig)

        if not registered:
            del self._hooks[hook]
            return False
        return True

    def unregister(self, hook: "GracefulShutdown") -> None:
        self._hooks.pop(hook, None)
        if not self._hooks:
            self.restore()

    def restore(self) -> None:
        """Put back the handlers captured before the first registration."""
        for sig, previous in self._original_handlers.items():
            try:
                if self._loop is not None:
                    self._loop.remove_signal_handler(sig)
                if previous is not None:
                    signal.signal(sig, previous)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Could not restore handler for {sig!r}: {e}")

        self._original_handlers.clear()
        self._loop = None

    def _dispatch(self, sig: signal.Signals) -> None:
        hooks = [hook for hook, signals in list(self._hooks.items()) if sig in signals]
        logger.info(f"Received {sig.name}, closing {len(hooks)} Redis client(s)")
        self._hooks.clear()
        self.restore()
        tasks.spawn(
            self._shutdown_and_forward(hooks, sig), name="redis-graceful-shutdown"
        )

    @staticmethod
    async def _shutdown_and_forward(
        hooks: List["GracefulShutdown"], sig: signal.Signals
    ) -> None:
        # Sequential: each shutdown drains background tasks, this one included
        try:
            for hook in hooks:
                await hook.shutdown()
        finally:
            signal.raise_signal(sig)


signal_dispatcher = _SignalDispatcher()


class GracefulShutdown:
    """
    One-shot shutdown routine for a Redis client.

    An active client drains pending background cache writes and closes
    gracefully; anything else (or a failing graceful close) is force
    disconnected. Only the first call does any work.
    """

    def __init__(
        self,
        client: Any,
        lifecycle: RedisLifecycleEvents,
        drain_timeout: float = 5.0,
    ):
        self._client = client
        self._lifecycle = lifecycle
        self._drain_timeout = drain_timeout
        self._shutting_down = False

    @property
    def client(self) -> Any:
        return self._client

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def installed_signals(self) -> Tuple[signal.Signals, ...]:
        return signal_dispatcher.signals_for(self)

    async def shutdown(self) -> None:
        if self._shutting_down:
            return

        self._shutting_down = True
        logger.info("Shutting down Redis client", extra={"client": self._lifecycle.name})

        try:
            if self._lifecycle.is_active:
                await tasks.drain(timeout=self._drain_timeout)
                await self._close()
                logger.info("Redis client closed gracefully")
            else:
                logger.info("Redis connection already closed")
                await self._force_disconnect()
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
            self._lifecycle.emit("error", error=e)
            await self._force_disconnect()
        finally:
            signal_dispatcher.unregister(self)
            self._lifecycle.emit("end")

    async def _close(self) -> None:
        await self._client.aclose()
        # Clients built on an explicit pool do not own it
        pool = getattr(self._client, "connection_pool", None)
        if pool is not None:
            await pool.disconnect()

    async def _force_disconnect(self) -> None:
        try:
            pool = getattr(self._client, "connection_pool", None)
            if pool is not None:
                await pool.disconnect(inuse_connections=True)
            else:
                await self._client.aclose()
        except Exception as e:
            logger.warning(f"Forced Redis disconnect failed: {e}")

    def install(
        self, signals: Iterable[signal.Signals] = (signal.SIGTERM, signal.SIGINT)
    ) -> bool:
        """
        Run shutdown on the first SIGTERM/SIGINT received by the running loop.

        All installed clients share one handler per signal. After they are
        shut down the signal is re-raised against the handler that was in
        place before the first install, so the host server still sees it.

        Returns:
            True if the handlers were installed
        """
        try:
            return signal_dispatcher.register(self, signals)
        except RuntimeError:
            logger.debug("No running event loop, Redis signal handlers not installed")
            return False
