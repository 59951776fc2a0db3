"""Tests for observer registration and fan-out."""

from __future__ import annotations

import threading

import pytest

from decoder import DecodeFailure, SosEvent, decode_message
from listeners import Dispatcher, ListenerRegistry

RECORD = decode_message("data", "H01,0,1,1,13.7,100.5,80")


def test_same_observer_registered_twice_is_delivered_once():
  registry = ListenerRegistry("telemetry")
  seen = []
  first = registry.add(seen.append)
  second = registry.add(seen.append)

  registry.notify("x")
  assert seen == ["x"]
  assert len(registry) == 1

  second()
  first()
  assert len(registry) == 0


def test_failing_observer_is_isolated(capsys):
  registry = ListenerRegistry("telemetry")
  calls = {"a": 0, "b": 0, "c": 0}

  def a(item):
    calls["a"] += 1
    raise ValueError("bad observer")

  def b(item):
    calls["b"] += 1

  def c(item):
    calls["c"] += 1

  for observer in (a, b, c):
    registry.add(observer)

  failed = registry.notify(RECORD)
  assert failed == 1
  assert calls == {"a": 1, "b": 1, "c": 1}
  assert "bad observer" in capsys.readouterr().out


def test_disposer_stops_delivery_and_is_repeatable():
  registry = ListenerRegistry("sos")
  seen = []
  dispose = registry.add(seen.append)

  registry.notify("one")
  dispose()
  registry.notify("two")
  dispose()

  assert seen == ["one"]


def test_stale_disposer_after_clear_keeps_new_registration():
  registry = ListenerRegistry("sos")
  seen = []
  old = registry.add(seen.append)
  registry.clear()
  old()

  registry.add(seen.append)
  old()
  registry.notify("still here")
  assert seen == ["still here"]


def test_observer_disposing_itself_during_fanout():
  registry = ListenerRegistry("telemetry")
  seen = []
  disposers = {}

  def once(item):
    seen.append(("once", item))
    disposers["once"]()

  disposers["once"] = registry.add(once)
  registry.add(lambda item: seen.append(("always", item)))

  registry.notify(1)
  registry.notify(2)
  assert seen.count(("once", 1)) == 1
  assert ("once", 2) not in seen
  assert ("always", 2) in seen


def test_observer_added_during_fanout_waits_for_next_message():
  registry = ListenerRegistry("telemetry")
  late = []

  def adder(item):
    registry.add(late.append)

  registry.add(adder)
  registry.notify(1)
  assert late == []
  registry.notify(2)
  assert late == [2]


def test_non_callable_is_rejected():
  with pytest.raises(TypeError):
    ListenerRegistry("x").add("not callable")


def test_dispatcher_routes_by_message_type():
  dispatcher = Dispatcher()
  records, alerts = [], []
  dispatcher.on_telemetry(records.append)
  dispatcher.on_sos(alerts.append)

  dispatcher.dispatch(RECORD)
  dispatcher.dispatch(SosEvent(payload="sos"))
  dispatcher.dispatch(DecodeFailure(topic="data", payload="x", reason="arity"))

  assert records == [RECORD]
  assert alerts == ["sos"]
  assert dispatcher.counts() == {"telemetry": 1, "sos": 1}

  dispatcher.clear()
  assert dispatcher.counts() == {"telemetry": 0, "sos": 0}


def test_concurrent_registration_during_fanout():
  registry = ListenerRegistry("telemetry")
  delivered = []
  registry.add(lambda item: delivered.append(item))
  stop = threading.Event()

  def churn():
    while not stop.is_set():
      dispose = registry.add(lambda item: None)
      dispose()

  workers = [threading.Thread(target=churn) for _ in range(4)]
  for worker in workers:
    worker.start()
  try:
    for i in range(500):
      registry.notify(i)
  finally:
    stop.set()
    for worker in workers:
      worker.join()

  assert delivered == list(range(500))
