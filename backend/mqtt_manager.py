import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Union

import paho.mqtt.client as mqtt

from config import (
  DEBUG_PAYLOAD,
  DEBUG_PAYLOAD_MAX,
  MQTT_CLIENT_ID,
  MQTT_CONNECT_TIMEOUT,
  MQTT_HOST,
  MQTT_KEEPALIVE,
  MQTT_MAX_RECONNECT_ATTEMPTS,
  MQTT_PASSWORD,
  MQTT_PORT,
  MQTT_RECONNECT_DELAY,
  MQTT_TRANSPORT,
  MQTT_USERNAME,
  MQTT_WS_PATH,
  SOS_BROADCAST,
  TOPIC_DATA,
  TOPIC_SOS,
)
from decoder import DecodeFailure, TelemetryRecord, decode_message, payload_text
from errors import MqttConnectionError, NotConnectedError
from link_state import DISCONNECTED, Event, LinkState, Phase, next_state
from listeners import Dispatcher, Disposer

ClientFactory = Callable[[str, str], Any]


def paho_client(client_id: str, transport: str) -> mqtt.Client:
  return mqtt.Client(
    mqtt.CallbackAPIVersion.VERSION2,
    client_id=(client_id or None),
    transport=transport,
  )


def _is_failure(reason_code: Any) -> bool:
  is_failure = getattr(reason_code, "is_failure", None)
  if is_failure is not None:
    return bool(is_failure)
  return reason_code != 0


class ConnectionManager:
  """Owns the one broker link of the process.

  connect() resolves once the SUBACK for the telemetry + SOS subscription
  arrives. paho invokes the callbacks below on its network thread; every
  state change happens under self._lock and pending futures are settled on
  the loop that created them.
  """

  def __init__(
    self,
    host: str = MQTT_HOST,
    port: int = MQTT_PORT,
    *,
    transport: str = MQTT_TRANSPORT,
    ws_path: str = MQTT_WS_PATH,
    username: str = MQTT_USERNAME,
    password: str = MQTT_PASSWORD,
    client_id: str = MQTT_CLIENT_ID,
    keepalive: int = MQTT_KEEPALIVE,
    connect_timeout: float = MQTT_CONNECT_TIMEOUT,
    reconnect_delay: int = MQTT_RECONNECT_DELAY,
    max_reconnect_attempts: int = MQTT_MAX_RECONNECT_ATTEMPTS,
    dispatcher: Optional[Dispatcher] = None,
    client_factory: Optional[ClientFactory] = None,
  ):
    self.host = host
    self.port = port
    self.transport = transport
    self.ws_path = ws_path
    self.username = username
    self.password = password
    self.client_id = client_id
    self.keepalive = keepalive
    self.connect_timeout = connect_timeout
    self.reconnect_delay = reconnect_delay
    self.max_reconnect_attempts = max_reconnect_attempts
    self.topics: Tuple[str, str] = (TOPIC_DATA, TOPIC_SOS)
    self.dispatcher = dispatcher if dispatcher is not None else Dispatcher()
    self._client_factory = client_factory or paho_client

    self._lock = threading.RLock()
    self._state: LinkState = DISCONNECTED
    self._client: Any = None
    self._sub_mid: Optional[int] = None
    # Set when a refused CONNACK was already counted; paho follows it with on_disconnect.
    self._refusal_counted = False
    self._pending: Optional[asyncio.Future] = None
    self._loop: Optional[asyncio.AbstractEventLoop] = None

    self.stats: Dict[str, Any] = {
      "received_total": 0,
      "decoded_total": 0,
      "dropped_total": 0,
      "last_rx_ts": None,
      "last_rx_topic": None,
      "connects_total": 0,
    }

  # =========================
  # Public API
  # =========================
  async def connect(self) -> None:
    loop = asyncio.get_running_loop()
    with self._lock:
      if self._state.connected and self._pending is None:
        return
      pending = self._pending
      if pending is None:
        if self._state.phase is Phase.BACKOFF:
          return
        pending = loop.create_future()
        self._pending = pending
        self._loop = loop
        self._transition(Event.CONNECT_REQUESTED)
        print(
          f"[mqtt] connecting host={self.host} port={self.port} transport={self.transport} "
          f"ws_path={self.ws_path if self.transport == 'websockets' else '-'} topics={','.join(self.topics)}"
        )
        try:
          self._start_client()
        except Exception as exc:
          client = self._client
          self._client = None
          self._pending = None
          self._state = DISCONNECTED
          if client is not None:
            self._close_client(client)
          raise MqttConnectionError(f"could not start client: {exc}") from exc

    try:
      await asyncio.wait_for(asyncio.shield(pending), timeout=self.connect_timeout)
    except asyncio.TimeoutError:
      client = None
      with self._lock:
        if self._pending is pending:
          client = self._abort(MqttConnectionError(f"no subscription ack within {self.connect_timeout}s"))
      if client is not None:
        self._close_client(client)
      raise MqttConnectionError(f"no subscription ack within {self.connect_timeout}s") from None

  def disconnect(self) -> None:
    with self._lock:
      if self._state.phase is Phase.DISCONNECTED and self._client is None:
        return
      client = self._abort(MqttConnectionError("disconnect requested before the connection completed"))
      self.dispatcher.clear()
    if client is not None:
      self._close_client(client)
    print("[mqtt] disconnected")

  def get_status(self) -> Dict[str, Any]:
    state = self._state
    return {
      "connected": state.connected,
      "connecting": state.connecting,
      "reconnect_attempts": state.attempts,
      "state": state.phase.value,
    }

  def publish(self, topic: str, payload: Union[str, bytes]) -> None:
    with self._lock:
      client = self._client
      connected = self._state.connected
    if client is None or not connected:
      raise NotConnectedError(f"cannot publish to {topic}: not connected")
    info = client.publish(topic, payload)
    if info.rc == mqtt.MQTT_ERR_NO_CONN:
      raise NotConnectedError(f"cannot publish to {topic}: connection lost")

  def publish_sos(self, hat_id: Any = None) -> str:
    payload = SOS_BROADCAST if hat_id is None or str(hat_id).strip() == "" else str(hat_id).strip()
    self.publish(TOPIC_SOS, payload)
    print(f"[mqtt] sent SOS payload={payload}")
    return payload

  def on_telemetry(self, observer: Callable[[TelemetryRecord], Any]) -> Disposer:
    return self.dispatcher.on_telemetry(observer)

  def on_sos(self, observer: Callable[[str], Any]) -> Disposer:
    return self.dispatcher.on_sos(observer)

  def handle_message(self, topic: str, payload: Union[bytes, str]) -> None:
    self.stats["received_total"] += 1
    self.stats["last_rx_ts"] = time.time()
    self.stats["last_rx_topic"] = topic

    message = decode_message(topic, payload)
    if isinstance(message, DecodeFailure):
      self.stats["dropped_total"] += 1
      preview = payload_text(payload)[:DEBUG_PAYLOAD_MAX]
      print(f"[decode] dropped topic={topic} reason={message.reason} preview={preview!r}")
      return

    self.stats["decoded_total"] += 1
    if DEBUG_PAYLOAD and isinstance(message, TelemetryRecord):
      print(f"[decode] PARSED hat={message.hat_id} status={message.helmet_status} lat={message.latitude} lon={message.longitude}")
    self.dispatcher.dispatch(message)

  # =========================
  # Client lifecycle
  # =========================
  def _start_client(self) -> None:
    client = self._client_factory(self.client_id, self.transport)
    if self.transport == "websockets":
      client.ws_set_options(path=self.ws_path)
    if self.username:
      client.username_pw_set(self.username, self.password)
    client.connect_timeout = self.connect_timeout
    client.reconnect_delay_set(min_delay=self.reconnect_delay, max_delay=self.reconnect_delay)

    client.on_connect = self._on_connect
    client.on_connect_fail = self._on_connect_fail
    client.on_disconnect = self._on_disconnect
    client.on_subscribe = self._on_subscribe
    client.on_message = self._on_message

    self._client = client
    client.connect_async(self.host, self.port, keepalive=self.keepalive)
    client.loop_start()

  def _close_client(self, client: Any) -> None:
    # Must run without self._lock held: loop_stop() joins the network thread.
    try:
      client.disconnect()
    except Exception as exc:
      print(f"[mqtt] disconnect failed: {exc}")
    try:
      client.loop_stop()
    except Exception as exc:
      print(f"[mqtt] loop_stop failed: {exc}")

  def _transition(self, event: Event) -> LinkState:
    previous = self._state
    self._state = next_state(previous, event, self.max_reconnect_attempts)
    if self._state != previous:
      print(f"[mqtt] state {previous.phase.value}({previous.attempts}) -> {self._state.phase.value}({self._state.attempts}) on {event.value}")
    return self._state

  def _settle(self, exc: Optional[BaseException] = None) -> None:
    pending, loop = self._pending, self._loop
    self._pending = None
    if pending is None or loop is None or loop.is_closed():
      return

    def apply() -> None:
      if pending.done():
        return
      if exc is None:
        pending.set_result(None)
      else:
        pending.set_exception(exc)

    loop.call_soon_threadsafe(apply)

  def _abort(self, exc: BaseException) -> Any:
    """Detach the client and reset to DISCONNECTED. Caller closes the returned client."""
    client = self._client
    self._client = None
    self._sub_mid = None
    self._refusal_counted = False
    self._transition(Event.DISCONNECT_REQUESTED)
    self._settle(exc)
    return client

  def _fail(self, event: Event, reason: str) -> Any:
    if self._pending is not None:
      print(f"[mqtt] connect failed: {reason}")
      return self._abort(MqttConnectionError(reason))

    state = self._transition(event)
    if state.phase is Phase.EXHAUSTED:
      print(f"[mqtt] giving up after {state.attempts - 1} reconnect attempts: {reason}")
      client = self._client
      self._client = None
      self._sub_mid = None
      return client
    return None

  # =========================
  # MQTT Callbacks (Paho v2)
  # =========================
  def _on_connect(self, client, userdata, flags, reason_code, properties=None):
    to_close = None
    with self._lock:
      if client is not self._client:
        return
      if _is_failure(reason_code):
        to_close = self._fail(Event.CONNECT_FAILED, f"broker refused connection reason_code={reason_code}")
        self._refusal_counted = self._client is client
      else:
        # Stays CONNECTING/BACKOFF until the subscription is acknowledged.
        self._refusal_counted = False
        self.stats["connects_total"] += 1
        print(f"[mqtt] connected reason_code={reason_code} subscribing topics={','.join(self.topics)}")
        to_close = self._subscribe(client)
    if to_close is not None:
      self._close_client(to_close)

  def _subscribe(self, client) -> Any:
    result, mid = client.subscribe([(topic, 0) for topic in self.topics])
    if result == mqtt.MQTT_ERR_SUCCESS:
      self._sub_mid = mid
      return None
    if self._pending is not None:
      return self._fail(Event.CONNECT_FAILED, f"subscribe failed rc={result}")
    # Only fails on a dropped socket; the following on_disconnect counts it.
    print(f"[mqtt] subscribe failed rc={result}")
    return None

  def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
    to_close = None
    with self._lock:
      if client is not self._client or mid != self._sub_mid:
        return
      self._sub_mid = None
      refused = [rc for rc in reason_code_list if _is_failure(rc)]
      if refused:
        reason = f"subscription refused reason_codes={refused}"
        if self._pending is None:
          print(f"[mqtt] {reason}")
        to_close = self._fail(Event.CONNECT_FAILED, reason)
        if to_close is None and self._client is client:
          # Counted as a failed reconnect attempt; ask again on the same session.
          to_close = self._subscribe(client)
      else:
        self._transition(Event.CONNECTED)
        print(f"[mqtt] subscribed topics={','.join(self.topics)}")
        self._settle()
    if to_close is not None:
      self._close_client(to_close)

  def _on_connect_fail(self, client, userdata):
    to_close = None
    with self._lock:
      if client is not self._client:
        return
      self._refusal_counted = False
      to_close = self._fail(Event.CONNECT_FAILED, "transport could not reach broker")
    if to_close is not None:
      self._close_client(to_close)

  def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
    to_close = None
    with self._lock:
      if client is not self._client:
        return
      print(f"[mqtt] disconnected reason_code={reason_code}")
      if self._refusal_counted:
        self._refusal_counted = False
        return
      event = Event.CONNECT_FAILED if self._state.phase is Phase.BACKOFF else Event.CONNECTION_LOST
      to_close = self._fail(event, f"connection lost reason_code={reason_code}")
    if to_close is not None:
      self._close_client(to_close)

  def _on_message(self, client, userdata, msg: mqtt.MQTTMessage):
    if client is not self._client:
      return
    try:
      self.handle_message(msg.topic, msg.payload)
    except Exception as exc:
      print(f"[mqtt] message handling failed topic={msg.topic}: {exc!r}")
