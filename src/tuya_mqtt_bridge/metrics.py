"""Prometheus metrics for the bridge."""

from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    start_http_server,
)

from tuya_mqtt_bridge.structs import LinkState

# Numeric encoding of LinkState for the gauge
LINK_STATE_VALUES: Final[dict[LinkState, int]] = {
    LinkState.UNKNOWN: 0,
    LinkState.UNCONNECTED: 1,
    LinkState.CONNECTED: 2,
    LinkState.DISCONNECTED: 3,
    LinkState.RECONNECTED: 4,
}

tuya_bridge_publish_total: Final = Counter(  # type: ignore[assignment]
    "tuya_bridge_publish_total",
    "Total snapshot publishes",
    ["device", "outcome"],
)

tuya_bridge_command_total: Final = Counter(  # type: ignore[assignment]
    "tuya_bridge_command_total",
    "Total inbound commands forwarded to devices",
    ["device", "outcome"],
)

tuya_bridge_reconnect_attempt_total: Final = Counter(  # type: ignore[assignment]
    "tuya_bridge_reconnect_attempt_total",
    "Total reconnect attempts issued by the reconciler",
    ["device"],
)

tuya_bridge_link_transition_total: Final = Counter(  # type: ignore[assignment]
    "tuya_bridge_link_transition_total",
    "Total link state transitions",
    ["link", "state"],
)

tuya_bridge_link_state: Final = Gauge(  # type: ignore[assignment]
    "tuya_bridge_link_state",
    "Current link state (0=unknown 1=unconnected 2=connected 3=disconnected 4=reconnected)",
    ["link"],
)


def record_publish(device: str, outcome: str) -> None:
    """Record a snapshot publish attempt ("success" or "error")."""
    tuya_bridge_publish_total.labels(device=device, outcome=outcome).inc()


def record_command(device: str, outcome: str) -> None:
    """Record a forwarded command ("success", "error" or "dropped")."""
    tuya_bridge_command_total.labels(device=device, outcome=outcome).inc()


def record_reconnect_attempt(device: str) -> None:
    tuya_bridge_reconnect_attempt_total.labels(device=device).inc()


def record_link_transition(link: str, state: LinkState) -> None:
    """Record a link transition and update the state gauge."""
    tuya_bridge_link_transition_total.labels(link=link, state=state.value).inc()
    tuya_bridge_link_state.labels(link=link).set(LINK_STATE_VALUES[state])


def start_metrics_server(port: int) -> None:
    """Start the Prometheus HTTP exporter in a background thread."""
    start_http_server(port)
