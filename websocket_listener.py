import asyncio
import contextlib
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import websockets

logger = logging.getLogger("WebSocketListener")

GRAPHQL_WS_PROTOCOL = "graphql-ws"

DataCallback = Callable[[str, Dict[str, Any]], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class InvalidTransition(RuntimeError):
    pass


class ConnectionStateMachine:
    """
    Connection lifecycle with linear backoff.

    A failure while connecting or after the socket closed moves to
    RECONNECTING with delay = base_delay * attempt. Once attempt exceeds
    max_attempts the machine parks in FAILED until started again.
    """

    TRANSITIONS = {
        ConnectionState.IDLE: {ConnectionState.CONNECTING},
        ConnectionState.CONNECTING: {ConnectionState.OPEN, ConnectionState.RECONNECTING,
                                     ConnectionState.FAILED, ConnectionState.IDLE},
        ConnectionState.OPEN: {ConnectionState.RECONNECTING, ConnectionState.FAILED, ConnectionState.IDLE},
        ConnectionState.RECONNECTING: {ConnectionState.CONNECTING, ConnectionState.IDLE},
        ConnectionState.FAILED: {ConnectionState.CONNECTING, ConnectionState.IDLE},
    }

    def __init__(self, base_delay: float = 1.0, max_attempts: int = 5):
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.state = ConnectionState.IDLE
        self.attempt = 0

    @property
    def is_active(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.RECONNECTING)

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state not in self.TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(f"[WS] {self.state.value} -> {new_state.value}")
        self.state = new_state

    def start(self) -> None:
        if self.state in (ConnectionState.IDLE, ConnectionState.FAILED):
            self.attempt = 0
        self._transition(ConnectionState.CONNECTING)

    def opened(self) -> None:
        self._transition(ConnectionState.OPEN)
        self.attempt = 0

    def next_delay(self) -> float:
        return self.base_delay * self.attempt

    def record_failure(self) -> Optional[float]:
        """Returns the delay before the next attempt, or None once the budget is spent."""
        self.attempt += 1
        if self.attempt > self.max_attempts:
            self._transition(ConnectionState.FAILED)
            return None
        self._transition(ConnectionState.RECONNECTING)
        return self.next_delay()

    def stop(self) -> None:
        if self.state != ConnectionState.IDLE:
            self._transition(ConnectionState.IDLE)
        self.attempt = 0


class SubscriptionMultiplexer:
    """
    One graphql-ws socket carrying several named subscriptions.

    Inbound data frames are routed by subscription id to the on_data callback.
    Transport errors and bad frames are logged, never raised: reconnecting is
    the only recovery and nothing is replayed after a reconnect.
    """

    def __init__(self, uri: str, subscriptions: Dict[str, str], base_delay: float = 1.0,
                 max_attempts: int = 5, connect_factory: Optional[Callable[..., Any]] = None):
        self.uri = uri
        self.subscriptions = dict(subscriptions)
        self.machine = ConnectionStateMachine(base_delay, max_attempts)
        self._connect_factory = connect_factory or websockets.connect
        self._on_data: Optional[DataCallback] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._disconnecting = False
        self._restart_pending = False
        self.stats = {
            "connections": 0,
            "frames_received": 0,
            "data_frames": 0,
            "last_error": "",
            "connection_time": 0.0,
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any], subscriptions: Dict[str, str], **kwargs) -> "SubscriptionMultiplexer":
        uri = config["BITQUERY_WS_URL"]
        token = config.get("BITQUERY_TOKEN", "")
        if token:
            uri = f"{uri}?token={token}"
        return cls(
            uri,
            subscriptions,
            base_delay=float(config.get("RECONNECT_BASE_DELAY_SECONDS", 1.0)),
            max_attempts=int(config.get("MAX_RECONNECT_ATTEMPTS", 5)),
            **kwargs
        )

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    def is_connected(self) -> bool:
        return self.machine.state == ConnectionState.OPEN and self._ws is not None

    def connect(self, on_data: DataCallback) -> None:
        """
        Start streaming into on_data.

        Must be called from a running event loop. When a connection is open or
        being attempted, only the callback is replaced. A call made while
        disconnect() is running takes effect once the teardown completes.
        """
        self._on_data = on_data
        if self._disconnecting:
            # disconnect() restarts the run once it has finished tearing down
            self._restart_pending = True
            return
        if self.machine.is_active:
            logger.debug("[WS] Connection already active, callback replaced")
            return

        self._stopping = False
        self.machine.start()
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def disconnect(self) -> None:
        self._stopping = True
        self._disconnecting = True
        try:
            await self._teardown()
        finally:
            self._disconnecting = False

        if self._restart_pending:
            self._restart_pending = False
            logger.info("[WS] connect() called during disconnect, reconnecting")
            self.connect(self._on_data)

    async def _teardown(self) -> None:
        ws = self._ws
        if ws is not None:
            for sub_id in self.subscriptions:
                await self._send({"type": "stop", "id": sub_id})
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"[WS] Error while closing socket: {e}")
            self._ws = None

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.machine.stop()
        logger.info("[WS] Disconnected")

    async def _run(self) -> None:
        while not self._stopping:
            try:
                logger.info("[WS] Connecting to streaming endpoint...")
                async with self._connect_factory(self.uri, subprotocols=[GRAPHQL_WS_PROTOCOL]) as ws:
                    self._ws = ws
                    self.machine.opened()
                    self.stats["connections"] += 1
                    self.stats["connection_time"] = time.time()
                    logger.info("[WS] Connected, sending connection_init")
                    await self._send({"type": "connection_init"})

                    async for raw_msg in ws:
                        try:
                            await self._handle_frame(raw_msg)
                        except Exception as e:
                            logger.error(f"[WS] Failed to handle frame: {e}")

                logger.info("[WS] Connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["last_error"] = str(e)
                logger.error(f"[WS] Connection error: {e}")
            finally:
                self._ws = None

            if self._stopping:
                break

            delay = self.machine.record_failure()
            if delay is None:
                logger.warning(f"[WS] Giving up after {self.machine.max_attempts} reconnect attempts")
                return

            logger.info(f"[WS] Reconnecting in {delay:.1f}s "
                        f"({self.machine.attempt}/{self.machine.max_attempts})")
            await asyncio.sleep(delay)
            if self._stopping:
                break
            self.machine.start()

    async def _send(self, message: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except Exception as e:
            logger.warning(f"[WS] Failed to send {message.get('type')}: {e}")
            return False

    async def _start_subscriptions(self) -> None:
        logger.info(f"[WS] Connection acknowledged, starting {len(self.subscriptions)} subscriptions")
        for sub_id, query in self.subscriptions.items():
            await self._send({"type": "start", "id": sub_id, "payload": {"query": query}})

    async def _handle_frame(self, raw_msg: Any) -> None:
        self.stats["frames_received"] += 1
        try:
            message = json.loads(raw_msg)
        except (TypeError, ValueError) as e:
            logger.warning(f"[WS] Malformed frame ignored: {e}")
            return

        if not isinstance(message, dict):
            logger.warning("[WS] Unexpected frame ignored")
            return

        kind = message.get("type")
        if kind == "connection_ack":
            await self._start_subscriptions()
        elif kind == "data":
            self._dispatch(message)
        elif kind == "ka":
            pass
        elif kind == "error":
            logger.error(f"[WS] Subscription {message.get('id')} error: {message.get('payload')}")
        elif kind == "complete":
            logger.info(f"[WS] Subscription {message.get('id')} completed by server")
        else:
            logger.debug(f"[WS] Unknown frame type ignored: {kind}")

    def _dispatch(self, message: Dict[str, Any]) -> None:
        sub_id = message.get("id")
        if not isinstance(sub_id, str) or sub_id not in self.subscriptions:
            logger.warning(f"[WS] Data for unknown subscription {sub_id!r} ignored")
            return

        payload = message.get("payload")
        if not isinstance(payload, dict):
            logger.warning(f"[WS] Data frame for {sub_id} without payload object ignored")
            return

        data = payload.get("data")
        if not isinstance(data, dict) or not data:
            return

        self.stats["data_frames"] += 1
        callback = self._on_data
        if callback is None:
            return
        try:
            callback(sub_id, data)
        except Exception as e:
            logger.error(f"[WS] Data handler failed for {sub_id}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "state": self.machine.state.value,
            "reconnect_attempt": self.machine.attempt,
        }
