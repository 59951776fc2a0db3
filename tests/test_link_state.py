"""Tests for the broker link transition function."""

from __future__ import annotations

import pytest

from link_state import DISCONNECTED, Event, LinkState, Phase, next_state

MAX = 3


def test_connect_request_from_idle_phases():
  assert next_state(DISCONNECTED, Event.CONNECT_REQUESTED, MAX) == LinkState(Phase.CONNECTING, 0)
  exhausted = LinkState(Phase.EXHAUSTED, 4)
  assert next_state(exhausted, Event.CONNECT_REQUESTED, MAX) == LinkState(Phase.CONNECTING, 0)


@pytest.mark.parametrize("phase", [Phase.CONNECTING, Phase.CONNECTED, Phase.BACKOFF])
def test_connect_request_is_ignored_while_live(phase):
  state = LinkState(phase, 1)
  assert next_state(state, Event.CONNECT_REQUESTED, MAX) is state


def test_first_handshake_failure_returns_to_disconnected():
  connecting = LinkState(Phase.CONNECTING, 0)
  assert next_state(connecting, Event.CONNECT_FAILED, MAX) == DISCONNECTED
  assert next_state(connecting, Event.CONNECTION_LOST, MAX) == DISCONNECTED


def test_loss_enters_backoff_and_counts():
  state = next_state(LinkState(Phase.CONNECTED, 0), Event.CONNECTION_LOST, MAX)
  assert state == LinkState(Phase.BACKOFF, 1)
  state = next_state(state, Event.CONNECT_FAILED, MAX)
  assert state == LinkState(Phase.BACKOFF, 2)


def test_ceiling_is_exceeded_into_exhausted():
  state = LinkState(Phase.CONNECTED, 0)
  state = next_state(state, Event.CONNECTION_LOST, MAX)
  for _ in range(MAX - 1):
    state = next_state(state, Event.CONNECT_FAILED, MAX)
  assert state == LinkState(Phase.BACKOFF, MAX)
  state = next_state(state, Event.CONNECT_FAILED, MAX)
  assert state.phase is Phase.EXHAUSTED
  assert not state.connected
  assert not state.connecting


def test_exhausted_ignores_transport_events():
  exhausted = LinkState(Phase.EXHAUSTED, MAX + 1)
  for event in (Event.CONNECT_FAILED, Event.CONNECTION_LOST, Event.CONNECTED):
    assert next_state(exhausted, event, MAX) is exhausted


def test_reconnect_success_resets_counter():
  assert next_state(LinkState(Phase.BACKOFF, 2), Event.CONNECTED, MAX) == LinkState(Phase.CONNECTED, 0)


@pytest.mark.parametrize("phase", list(Phase))
def test_disconnect_request_always_lands_in_disconnected(phase):
  assert next_state(LinkState(phase, 2), Event.DISCONNECT_REQUESTED, MAX) == DISCONNECTED


def test_status_flags():
  assert LinkState(Phase.CONNECTED).connected
  assert LinkState(Phase.BACKOFF, 1).connecting
  assert LinkState(Phase.CONNECTING).connecting
  assert not DISCONNECTED.connecting
