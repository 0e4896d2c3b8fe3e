from enum import Enum


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.IDLE: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.CLOSING,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.CLOSING,
        ConnectionState.CLOSED,
        ConnectionState.ERROR,
    },
    ConnectionState.CLOSING: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: {ConnectionState.CONNECTING},
    ConnectionState.ERROR: {ConnectionState.CONNECTING, ConnectionState.CLOSING},
}

STARTABLE_STATES = frozenset(
    {ConnectionState.IDLE, ConnectionState.CLOSED, ConnectionState.ERROR}
)
CLOSE_IGNORED_STATES = frozenset(
    {ConnectionState.IDLE, ConnectionState.CLOSED, ConnectionState.CLOSING}
)

_STATUS_TEXT = {
    ConnectionState.IDLE: "Ready to start",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.CONNECTED: "Connected. Start speaking.",
    ConnectionState.CLOSING: "Disconnecting...",
    ConnectionState.CLOSED: "Session ended. Start again to continue.",
    ConnectionState.ERROR: "Connection error. Please try again.",
}


class InvalidTransitionError(Exception):
    pass


def validate_transition(current: ConnectionState, target: ConnectionState) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.name} to {target.name}")


def status_text(state: ConnectionState, error_message: str | None = None) -> str:
    if state == ConnectionState.ERROR and error_message:
        return error_message
    return _STATUS_TEXT[state]
