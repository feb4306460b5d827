#!/usr/bin/env python3

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import Any, Callable, Optional

from .events import DiscreteAction, DwellTrigger, PointerUpdate, ScrollStep

logger = logging.getLogger(__name__)

# Rough page distance covered by one wheel notch.
PIXELS_PER_NOTCH = 40.0


def discover_backends() -> list[dict[str, Any]]:
    """Available OS pointer backends in preference order."""
    backends: list[dict[str, Any]] = []
    try:
        import pyautogui

        if hasattr(pyautogui, "FAILSAFE"):
            pyautogui.FAILSAFE = False
        if hasattr(pyautogui, "PAUSE"):
            pyautogui.PAUSE = 0
        backends.append({"type": "pyautogui", "api": pyautogui})
    except Exception as exc:
        # pyautogui raises assorted errors on headless displays at import time.
        logger.debug("pyautogui unavailable: %s", exc)

    try:
        from pynput.mouse import Button, Controller

        controller = Controller()
        _ = controller.position
        backends.append(
            {"type": "pynput", "api": controller, "buttons": {"left": Button.left, "right": Button.right}}
        )
    except Exception as exc:
        logger.debug("pynput unavailable: %s", exc)

    if sys.platform.startswith("linux"):
        xdotool = shutil.which("xdotool")
        if xdotool is not None:
            backends.append({"type": "xdotool", "bin": xdotool})
    return backends


def _pyautogui_move(api: Any, x: int, y: int) -> None:
    try:
        api.moveTo(x, y, 0, _pause=False)
    except TypeError:
        api.moveTo(x, y)


def _xdotool(backend: dict[str, Any], *args: str) -> None:
    subprocess.run([backend["bin"], *args], check=True)


class CursorBackendManager:
    """Drives the OS pointer from pipeline events with a backend fallback chain."""

    def __init__(
        self,
        monitor_width: int,
        monitor_height: int,
        backends: Optional[list[dict[str, Any]]] = None,
        *,
        move_pointer: bool = True,
        click_on_dwell: bool = True,
    ) -> None:
        self.monitor_width = int(monitor_width)
        self.monitor_height = int(monitor_height)
        self._backends = discover_backends() if backends is None else list(backends)
        self._active_index = 0
        self._warned = False
        self.move_pointer = move_pointer
        self.click_on_dwell = click_on_dwell
        self.cursor_pos: Optional[tuple[int, int]] = None

    @property
    def backend_names(self) -> str:
        return ", ".join(b.get("type", "unknown") for b in self._backends)

    @property
    def active_backend(self) -> Optional[dict[str, Any]]:
        if not self._backends:
            return None
        return self._backends[self._active_index]

    def _clamp(self, x: float, y: float) -> tuple[int, int]:
        return (
            int(max(0, min(self.monitor_width - 1, int(x)))),
            int(max(0, min(self.monitor_height - 1, int(y)))),
        )

    def _dispatch(self, op: Callable[[dict[str, Any]], None]) -> tuple[bool, Optional[Exception], Optional[str]]:
        """Run ``op`` on the active backend, falling through the others on failure."""
        if not self._backends:
            if not self._warned:
                logger.warning("cursor control disabled: no pointer backend available")
                self._warned = True
            return False, None, None

        count = len(self._backends)
        last_err: Optional[Exception] = None
        for step in range(count):
            idx = (self._active_index + step) % count
            backend = self._backends[idx]
            try:
                op(backend)
            except Exception as exc:
                last_err = exc
                logger.debug("backend %s failed: %s", backend.get("type"), exc)
                continue
            self._active_index = idx
            self._warned = False
            return True, None, backend.get("type", "unknown")

        if not self._warned:
            logger.warning("cursor action failed on all backends (%s); check OS input permissions", last_err)
            self._warned = True
        return False, last_err, None

    def move_cursor(self, target_x: float, target_y: float) -> tuple[bool, Optional[Exception], Optional[str]]:
        x, y = self._clamp(target_x, target_y)

        def _op(backend: dict[str, Any]) -> None:
            kind = backend.get("type")
            if kind == "pyautogui":
                _pyautogui_move(backend["api"], x, y)
            elif kind == "pynput":
                backend["api"].position = (x, y)
            elif kind == "xdotool":
                _xdotool(backend, "mousemove", str(x), str(y))
            else:
                raise RuntimeError(f"Unsupported cursor backend: {kind}")

        result = self._dispatch(_op)
        if result[0]:
            self.cursor_pos = (x, y)
        return result

    def click(self, target_x: float, target_y: float, button: str = "left") -> tuple[bool, Optional[Exception], Optional[str]]:
        x, y = self._clamp(target_x, target_y)

        def _op(backend: dict[str, Any]) -> None:
            kind = backend.get("type")
            if kind == "pyautogui":
                backend["api"].click(x=x, y=y, button=button)
            elif kind == "pynput":
                backend["api"].position = (x, y)
                backend["api"].click(backend["buttons"][button], 1)
            elif kind == "xdotool":
                _xdotool(backend, "mousemove", str(x), str(y), "click", "3" if button == "right" else "1")
            else:
                raise RuntimeError(f"Unsupported cursor backend: {kind}")

        result = self._dispatch(_op)
        if result[0]:
            self.cursor_pos = (x, y)
        return result

    def scroll(self, direction: str, magnitude: float) -> tuple[bool, Optional[Exception], Optional[str]]:
        notches = max(1, int(round(float(magnitude) / PIXELS_PER_NOTCH)))
        signed = notches if direction == "up" else -notches

        def _op(backend: dict[str, Any]) -> None:
            kind = backend.get("type")
            if kind == "pyautogui":
                backend["api"].scroll(signed)
            elif kind == "pynput":
                backend["api"].scroll(0, signed)
            elif kind == "xdotool":
                _xdotool(backend, "click", "--repeat", str(notches), "4" if direction == "up" else "5")
            else:
                raise RuntimeError(f"Unsupported cursor backend: {kind}")

        return self._dispatch(_op)

    def handle(self, event: Any) -> bool:
        """Apply one pipeline event; True when it caused an OS pointer action."""
        if isinstance(event, PointerUpdate):
            return self.move_pointer and self.move_cursor(event.x, event.y)[0]
        if isinstance(event, DwellTrigger):
            return self.click_on_dwell and self.click(event.x, event.y, "left")[0]
        if isinstance(event, DiscreteAction):
            return self.click(event.x, event.y, event.button)[0]
        if isinstance(event, ScrollStep):
            return self.scroll(event.direction, event.magnitude)[0]
        return False
