"""
Unit tests for the link lifecycle state machine.
"""

import itertools

import pytest
from prometheus_client import REGISTRY

from tuya_mqtt_bridge.link_state import TRANSITIONS, ConnectionStateTracker, LinkSignal, next_state
from tuya_mqtt_bridge.metrics import LINK_STATE_VALUES
from tuya_mqtt_bridge.structs import LinkState

U, UC, C, D, R = (
    LinkState.UNKNOWN,
    LinkState.UNCONNECTED,
    LinkState.CONNECTED,
    LinkState.DISCONNECTED,
    LinkState.RECONNECTED,
)
CONNECT, CLOSE = LinkSignal.CONNECT, LinkSignal.CLOSE


class TestTransitionTable:
    """Every cell of the state/signal table"""

    @pytest.mark.parametrize(
        ("state", "signal", "expected"),
        [
            (U, CONNECT, C),
            (U, CLOSE, UC),
            (UC, CONNECT, C),
            (UC, CLOSE, None),
            (C, CONNECT, None),
            (C, CLOSE, D),
            (D, CONNECT, R),
            (D, CLOSE, None),
            (R, CONNECT, None),
            (R, CLOSE, D),
        ],
    )
    def test_next_state(self, state, signal, expected):
        assert next_state(state, signal) is expected

    def test_unknown_is_never_reentered(self):
        assert U not in TRANSITIONS.values()

    def test_is_up_only_after_connect(self):
        assert {state for state in LinkState if state.is_up} == {C, R}


class TestConnectionStateTracker:
    """Tests for ConnectionStateTracker observers and state folding"""

    def test_starts_unknown(self):
        tracker = ConnectionStateTracker("test")
        assert tracker.state is U
        assert tracker.is_up is False

    def test_observer_called_once_per_transition(self):
        seen = []
        tracker = ConnectionStateTracker("test", observers=[seen.append])

        assert tracker.on_close() is UC
        assert tracker.on_connect() is C
        assert tracker.on_connect() is None  # redundant notification
        assert tracker.on_close() is D
        assert tracker.on_close() is None
        assert tracker.on_connect() is R
        assert tracker.on_close() is D

        assert seen == [UC, C, D, R, D]

    def test_observers_run_in_registration_order(self):
        order = []
        tracker = ConnectionStateTracker("test")
        tracker.add_observer(lambda state: order.append(("first", state)))
        tracker.add_observer(lambda state: order.append(("second", state)))

        _ = tracker.on_connect()

        assert order == [("first", C), ("second", C)]

    @pytest.mark.parametrize("signals", list(itertools.product([CONNECT, CLOSE], repeat=5)))
    def test_final_state_is_fold_of_signals(self, signals):
        """Any signal sequence ends in the state the table predicts and notifies only real changes"""
        seen = []
        tracker = ConnectionStateTracker("fold", observers=[seen.append])
        expected_state = U
        expected_seen = []
        for signal in signals:
            new_state = next_state(expected_state, signal)
            if new_state is not None:
                expected_state = new_state
                expected_seen.append(new_state)
            _ = tracker.on_connect() if signal is CONNECT else tracker.on_close()

        assert tracker.state is expected_state
        assert seen == expected_seen
        assert all(earlier is not later for earlier, later in itertools.pairwise(seen))

    def test_transition_updates_state_gauge(self):
        tracker = ConnectionStateTracker("gauge-link")

        _ = tracker.on_connect()
        _ = tracker.on_close()

        value = REGISTRY.get_sample_value("tuya_bridge_link_state", {"link": "gauge-link"})
        assert value == LINK_STATE_VALUES[D]

    def test_noop_does_not_count_transition(self):
        tracker = ConnectionStateTracker("noop-link")
        _ = tracker.on_connect()
        _ = tracker.on_connect()

        count = REGISTRY.get_sample_value(
            "tuya_bridge_link_transition_total",
            {"link": "noop-link", "state": "connected"},
        )
        assert count == 1.0
