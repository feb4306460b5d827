#!/usr/bin/env python3

from __future__ import annotations

import contextlib
import json
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

SOURCE = "gaze"

PHASE_LOADING = "loading"
PHASE_READY = "ready"
PHASE_CALIBRATING = "calibrating"
PHASE_LIVE = "live"
PHASES = (PHASE_LOADING, PHASE_READY, PHASE_CALIBRATING, PHASE_LIVE)


def _envelope(intent: str, timestamp: float, confidence: float, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "source": SOURCE,
        "timestamp": int(timestamp),
        "confidence": float(max(0.0, min(1.0, confidence))),
        "intent": intent,
        "payload": payload,
    }


def _ref(handle: Hashable) -> Any:
    if isinstance(handle, (str, int, float, bool)) or handle is None:
        return handle
    return str(handle)


@dataclass(frozen=True)
class PointerUpdate:
    x: float
    y: float
    confidence: float
    timestamp: float

    intent = "pointer-update"

    def to_message(self) -> Dict[str, Any]:
        return _envelope(self.intent, self.timestamp, self.confidence, {"x": round(self.x, 1), "y": round(self.y, 1)})


@dataclass(frozen=True)
class StatusUpdate:
    phase: str
    note: str = ""
    timestamp: float = 0.0

    intent = "status"

    def to_message(self) -> Dict[str, Any]:
        return _envelope(self.intent, self.timestamp, 1.0, {"phase": self.phase, "note": self.note})


@dataclass(frozen=True)
class DwellTrigger:
    target: Hashable
    x: float
    y: float
    timestamp: float
    dwell_ms: float = 0.0

    intent = "dwell-trigger"

    def to_message(self) -> Dict[str, Any]:
        return _envelope(
            self.intent,
            self.timestamp,
            1.0,
            {"target": _ref(self.target), "x": round(self.x, 1), "y": round(self.y, 1), "dwell_ms": int(self.dwell_ms)},
        )


@dataclass(frozen=True)
class SyntheticPointerEvent:
    type: str
    x: float
    y: float
    button: str


@dataclass(frozen=True)
class DiscreteAction:
    kind: str
    button: str
    x: float
    y: float
    timestamp: float
    hold_ms: float = 0.0
    target: Optional[Hashable] = None
    sequence: tuple[SyntheticPointerEvent, ...] = field(default_factory=tuple)

    intent = "discrete-action"

    def to_message(self) -> Dict[str, Any]:
        return _envelope(
            self.intent,
            self.timestamp,
            1.0,
            {
                "kind": self.kind,
                "button": self.button,
                "x": round(self.x, 1),
                "y": round(self.y, 1),
                "hold_ms": int(self.hold_ms),
                "target": _ref(self.target),
                "sequence": [e.type for e in self.sequence],
            },
        )


@dataclass(frozen=True)
class ScrollStep:
    direction: str
    magnitude: float
    timestamp: float
    intensity: float = 1.0

    intent = "scroll-step"

    def to_message(self) -> Dict[str, Any]:
        return _envelope(
            self.intent,
            self.timestamp,
            self.intensity,
            {"direction": self.direction, "magnitude": round(self.magnitude, 1)},
        )


def encode_event(event: Any) -> bytes:
    """One newline-terminated compact JSON line for an event."""
    return (json.dumps(event.to_message(), separators=(",", ":")) + "\n").encode("utf-8")


class SocketEventBus:
    """Fans events out to local TCP clients as newline-delimited JSON.

    A client that errors or stalls longer than ``send_timeout`` is dropped so
    a slow reader never holds up the frame loop.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8765, send_timeout: float = 0.2) -> None:
        self.host = host
        self.port = port
        self.send_timeout = send_timeout
        self._listener: Optional[socket.socket] = None
        self._peers: Dict[Tuple[str, int], socket.socket] = {}
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._listener is not None

    @property
    def address(self) -> Tuple[str, int]:
        if self._listener is not None:
            return self._listener.getsockname()[:2]
        return self.host, self.port

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._peers)

    def start(self) -> None:
        if self.running:
            return
        listener = socket.create_server((self.host, self.port), backlog=4)
        listener.settimeout(0.5)
        self._listener = listener
        self._stopped.clear()
        self._thread = threading.Thread(target=self._serve, args=(listener,), name="gazedwell-events", daemon=True)
        self._thread.start()
        logger.info("event bus listening on tcp://%s:%s", *self.address)

    def _serve(self, listener: socket.socket) -> None:
        while not self._stopped.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                # listener closed by stop()
                break
            conn.settimeout(self.send_timeout)
            with self._lock:
                self._peers[peer[:2]] = conn
            logger.info("event client connected: %s:%s", *peer[:2])

    def publish(self, event: Any) -> int:
        """Send one event to every client; returns how many received it."""
        if not self.running:
            return 0
        line = encode_event(event)
        with self._lock:
            peers = list(self._peers.items())
        failed = []
        for peer, conn in peers:
            try:
                conn.sendall(line)
            except OSError as exc:
                logger.info("event client %s:%s dropped (%s)", peer[0], peer[1], exc)
                failed.append(peer)
        for peer in failed:
            self._drop(peer)
        return len(peers) - len(failed)

    def _drop(self, peer: Tuple[str, int]) -> None:
        with self._lock:
            conn = self._peers.pop(peer, None)
        if conn is not None:
            with contextlib.suppress(OSError):
                conn.close()

    def stop(self) -> None:
        self._stopped.set()
        listener, self._listener = self._listener, None
        if listener is not None:
            with contextlib.suppress(OSError):
                listener.close()
        with self._lock:
            peers = list(self._peers)
        for peer in peers:
            self._drop(peer)
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
