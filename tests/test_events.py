import json
import socket
import time

from gazedwell.events import (
    DiscreteAction,
    DwellTrigger,
    PointerUpdate,
    ScrollStep,
    SocketEventBus,
    StatusUpdate,
    encode_event,
)
from gazedwell.gestures import synthesize_click


def test_pointer_update_envelope():
    assert PointerUpdate(12.34, 20.0, 0.9, 1000.7).to_message() == {
        "source": "gaze",
        "timestamp": 1000,
        "confidence": 0.9,
        "intent": "pointer-update",
        "payload": {"x": 12.3, "y": 20.0},
    }


def test_confidence_is_clamped():
    assert PointerUpdate(0, 0, 1.5, 0).to_message()["confidence"] == 1.0
    assert ScrollStep("up", 60.0, 0, intensity=-1.0).to_message()["confidence"] == 0.0


def test_status_and_scroll_payloads():
    status = StatusUpdate("calibrating", "fit med=12px p90=30px", 5).to_message()
    assert status["intent"] == "status"
    assert status["payload"] == {"phase": "calibrating", "note": "fit med=12px p90=30px"}
    scroll = ScrollStep("down", 105.04, 10, 0.875).to_message()
    assert scroll["payload"] == {"direction": "down", "magnitude": 105.0}


def test_dwell_trigger_stringifies_opaque_targets():
    message = DwellTrigger(target=("row", 3), x=10, y=20, timestamp=3, dwell_ms=612.5).to_message()
    assert message["intent"] == "dwell-trigger"
    assert message["payload"]["target"] == "('row', 3)"
    assert message["payload"]["dwell_ms"] == 612


def test_discrete_action_lists_sequence():
    action = DiscreteAction(
        kind="long",
        button="right",
        x=1,
        y=2,
        timestamp=9,
        hold_ms=950,
        target="menu",
        sequence=synthesize_click((1, 2), "right"),
    )
    payload = action.to_message()["payload"]
    assert payload["sequence"] == ["pointermove", "pointerdown", "pointerup", "contextmenu"]
    assert payload["target"] == "menu"
    assert json.loads(json.dumps(action.to_message())) == action.to_message()


def test_socket_bus_broadcasts_json_lines():
    bus = SocketEventBus(host="127.0.0.1", port=0)
    assert bus.publish(PointerUpdate(1, 2, 1.0, 0)) == 0
    bus.start()
    try:
        client = socket.create_connection(bus.address, timeout=2.0)
        deadline = time.monotonic() + 3.0
        while bus.client_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert bus.client_count == 1

        assert bus.publish(StatusUpdate("live", "", 42)) == 1
        line = client.makefile("r", encoding="utf-8").readline()
        assert json.loads(line)["payload"]["phase"] == "live"
        client.close()
    finally:
        bus.stop()
    assert bus.client_count == 0
    assert not bus.running


def test_encode_event_is_one_compact_line():
    line = encode_event(ScrollStep("up", 120.0, 7))
    assert line.endswith(b"\n") and line.count(b"\n") == 1
    assert b" " not in line
    assert json.loads(line)["intent"] == "scroll-step"
