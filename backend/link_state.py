from dataclasses import dataclass
from enum import Enum


class Phase(str, Enum):
  DISCONNECTED = "disconnected"
  CONNECTING = "connecting"
  CONNECTED = "connected"
  BACKOFF = "backoff"
  EXHAUSTED = "exhausted"


class Event(str, Enum):
  CONNECT_REQUESTED = "connect_requested"
  CONNECTED = "connected"
  CONNECT_FAILED = "connect_failed"
  CONNECTION_LOST = "connection_lost"
  DISCONNECT_REQUESTED = "disconnect_requested"


@dataclass(frozen=True)
class LinkState:
  phase: Phase = Phase.DISCONNECTED
  attempts: int = 0

  @property
  def connected(self) -> bool:
    return self.phase is Phase.CONNECTED

  @property
  def connecting(self) -> bool:
    return self.phase in (Phase.CONNECTING, Phase.BACKOFF)


DISCONNECTED = LinkState()


def _retry(state: LinkState, max_attempts: int) -> LinkState:
  attempts = state.attempts + 1
  if attempts > max_attempts:
    return LinkState(Phase.EXHAUSTED, attempts)
  return LinkState(Phase.BACKOFF, attempts)


def next_state(state: LinkState, event: Event, max_attempts: int) -> LinkState:
  """Pure transition function of the broker link.

  Events that make no sense in the current phase leave the state unchanged.
  """
  if event is Event.DISCONNECT_REQUESTED:
    return DISCONNECTED

  phase = state.phase
  if event is Event.CONNECT_REQUESTED:
    if phase in (Phase.DISCONNECTED, Phase.EXHAUSTED):
      return LinkState(Phase.CONNECTING, 0)
    return state

  if event is Event.CONNECTED:
    if phase in (Phase.CONNECTING, Phase.BACKOFF, Phase.CONNECTED):
      return LinkState(Phase.CONNECTED, 0)
    return state

  if event is Event.CONNECT_FAILED:
    if phase is Phase.CONNECTING:
      # First handshake never succeeded: fail the caller, no auto retry.
      return DISCONNECTED
    if phase is Phase.BACKOFF:
      return _retry(state, max_attempts)
    return state

  if event is Event.CONNECTION_LOST:
    if phase is Phase.CONNECTED:
      return _retry(state, max_attempts)
    if phase is Phase.CONNECTING:
      return DISCONNECTED
    if phase is Phase.BACKOFF:
      return _retry(state, max_attempts)
    return state

  return state
