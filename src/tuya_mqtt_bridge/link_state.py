"""Connection lifecycle state machine shared by the broker link and every device link.

Two raw signals, connect and close, drive five named states:

    state          connect         close
    UNKNOWN        CONNECTED       UNCONNECTED
    UNCONNECTED    CONNECTED       -
    CONNECTED      -               DISCONNECTED
    DISCONNECTED   RECONNECTED     -
    RECONNECTED    -               DISCONNECTED

Cells marked ``-`` are no-ops: the state is unchanged and no observer runs.
A connect while already up is a redundant notification from the client library.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Final

from tuya_mqtt_bridge import metrics
from tuya_mqtt_bridge.logging_abstraction import get_logger
from tuya_mqtt_bridge.structs import LinkState

logger = get_logger(__name__)

StateObserver = Callable[[LinkState], None]


class LinkSignal(StrEnum):
    CONNECT = "connect"
    CLOSE = "close"


TRANSITIONS: Final[dict[tuple[LinkState, LinkSignal], LinkState]] = {
    (LinkState.UNKNOWN, LinkSignal.CONNECT): LinkState.CONNECTED,
    (LinkState.UNKNOWN, LinkSignal.CLOSE): LinkState.UNCONNECTED,
    (LinkState.UNCONNECTED, LinkSignal.CONNECT): LinkState.CONNECTED,
    (LinkState.CONNECTED, LinkSignal.CLOSE): LinkState.DISCONNECTED,
    (LinkState.DISCONNECTED, LinkSignal.CONNECT): LinkState.RECONNECTED,
    (LinkState.RECONNECTED, LinkSignal.CLOSE): LinkState.DISCONNECTED,
}


def next_state(state: LinkState, signal: LinkSignal) -> LinkState | None:
    """Return the state reached from ``state`` on ``signal``, or None for a no-op."""
    return TRANSITIONS.get((state, signal))


class ConnectionStateTracker:
    """Tracks the lifecycle of one link.

    Observers are called once per actual transition with the new state, in
    registration order. No-op signals return None and notify nobody.
    """

    def __init__(self, link_name: str, observers: list[StateObserver] | None = None) -> None:
        self.link_name: str = link_name
        self._state: LinkState = LinkState.UNKNOWN
        self._observers: list[StateObserver] = list(observers or [])

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_up(self) -> bool:
        return self._state.is_up

    def add_observer(self, observer: StateObserver) -> None:
        self._observers.append(observer)

    def on_connect(self) -> LinkState | None:
        """Feed a connect signal. Returns the new state if a transition happened."""
        return self._apply(LinkSignal.CONNECT)

    def on_close(self) -> LinkState | None:
        """Feed a close signal. Returns the new state if a transition happened."""
        return self._apply(LinkSignal.CLOSE)

    def _apply(self, signal: LinkSignal) -> LinkState | None:
        new_state = next_state(self._state, signal)
        if new_state is None:
            logger.debug("%s: ignoring %s signal in state %s", self.link_name, signal, self._state)
            return None

        self._state = new_state
        metrics.record_link_transition(self.link_name, new_state)
        for observer in self._observers:
            observer(new_state)
        return new_state

    def __repr__(self) -> str:
        return f"ConnectionStateTracker(link={self.link_name!r}, state={self._state.value!r})"
