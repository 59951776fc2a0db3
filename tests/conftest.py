"""Shared test fixtures: a scriptable stand-in for the paho client."""

from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace

import pytest

from mqtt_manager import ConnectionManager


class FakeReasonCode:
  def __init__(self, value: int = 0):
    self.value = value

  @property
  def is_failure(self) -> bool:
    return self.value >= 0x80

  def __repr__(self) -> str:
    return f"FakeReasonCode({self.value:#x})"


class FakeClient:
  """Records what the manager asks of it; tests fire the broker side by hand."""

  def __init__(self, client_id: str, transport: str):
    self.client_id = client_id
    self.transport = transport
    self.ws_path = None
    self.credentials = None
    self.reconnect_delay = None
    self.connect_timeout = None
    self.connected_to = None
    self.loop_started = False
    self.loop_stopped = False
    self.disconnected = False
    self.subscriptions = []
    self.published = []
    self.publish_rc = 0
    self._next_mid = 1

    self.on_connect = None
    self.on_connect_fail = None
    self.on_disconnect = None
    self.on_subscribe = None
    self.on_message = None

  def ws_set_options(self, path="/mqtt", headers=None):
    self.ws_path = path

  def username_pw_set(self, username, password=None):
    self.credentials = (username, password)

  def reconnect_delay_set(self, min_delay=1, max_delay=120):
    self.reconnect_delay = (min_delay, max_delay)

  def connect_async(self, host, port=1883, keepalive=60, **kwargs):
    self.connected_to = (host, port, keepalive)

  def loop_start(self):
    self.loop_started = True

  def loop_stop(self):
    self.loop_stopped = True

  def disconnect(self, *args, **kwargs):
    self.disconnected = True

  def subscribe(self, topics, qos=0):
    mid = self._next_mid
    self._next_mid += 1
    self.subscriptions.append((mid, topics))
    return 0, mid

  def publish(self, topic, payload=None, qos=0, retain=False):
    self.published.append((topic, payload))
    return SimpleNamespace(rc=self.publish_rc)

  # Broker side
  def fire_connect(self, reason_code: int = 0):
    self.on_connect(self, None, {}, FakeReasonCode(reason_code), None)

  def fire_suback(self, refused: bool = False):
    mid, topics = self.subscriptions[-1]
    codes = [FakeReasonCode(0x80 if refused else 0) for _ in topics]
    self.on_subscribe(self, None, mid, codes, None)

  def fire_connect_fail(self):
    self.on_connect_fail(self, None)

  def fire_disconnect(self, reason_code: int = 0x80):
    self.on_disconnect(self, None, {}, FakeReasonCode(reason_code), None)

  def fire_message(self, topic: str, payload):
    self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))


class FakeClientFactory:
  def __init__(self):
    self.clients = []

  def __call__(self, client_id: str, transport: str) -> FakeClient:
    client = FakeClient(client_id, transport)
    self.clients.append(client)
    return client

  @property
  def last(self) -> FakeClient:
    return self.clients[-1]


@pytest.fixture
def factory():
  return FakeClientFactory()


@pytest.fixture
def manager(factory):
  return ConnectionManager(
    "broker.test",
    1883,
    transport="tcp",
    username="smarthelmet",
    password="secret",
    keepalive=30,
    connect_timeout=2.0,
    reconnect_delay=1,
    max_reconnect_attempts=3,
    client_factory=factory,
  )


async def connect_manager(manager: ConnectionManager, factory: FakeClientFactory) -> FakeClient:
  task = asyncio.create_task(manager.connect())
  await asyncio.sleep(0)
  client = factory.last
  client.fire_connect()
  client.fire_suback()
  await task
  return client


def wait_until(predicate, timeout: float = 2.0) -> bool:
  deadline = time.monotonic() + timeout
  while time.monotonic() < deadline:
    if predicate():
      return True
    time.sleep(0.01)
  return predicate()
