import threading
from typing import Any, Callable, Dict, List

from decoder import DecodeFailure, Message, SosEvent, TelemetryRecord
from errors import ObserverError

Observer = Callable[[Any], Any]
Disposer = Callable[[], None]


class ListenerRegistry:
  """Observers keyed by reference; each registration gets its own token.

  A disposer only removes the registration it was issued for, so a disposer
  kept across clear() cannot drop a later re-registration of the same observer.
  """

  def __init__(self, name: str):
    self.name = name
    self._lock = threading.Lock()
    self._observers: Dict[Observer, object] = {}

  def add(self, observer: Observer) -> Disposer:
    if not callable(observer):
      raise TypeError(f"observer must be callable, got {type(observer).__name__}")
    with self._lock:
      token = self._observers.get(observer)
      if token is None:
        token = object()
        self._observers[observer] = token

    def dispose() -> None:
      with self._lock:
        if self._observers.get(observer) is token:
          del self._observers[observer]

    return dispose

  def clear(self) -> None:
    with self._lock:
      self._observers.clear()

  def snapshot(self) -> List[Observer]:
    with self._lock:
      return list(self._observers)

  def notify(self, item: Any) -> int:
    failed = 0
    for observer in self.snapshot():
      try:
        observer(item)
      except Exception as exc:
        failed += 1
        err = ObserverError(observer, item, exc)
        print(f"[dispatch] {self.name} {err}")
    return failed

  def __len__(self) -> int:
    with self._lock:
      return len(self._observers)


class Dispatcher:
  def __init__(self):
    self.telemetry = ListenerRegistry("telemetry")
    self.sos = ListenerRegistry("sos")

  def on_telemetry(self, observer: Callable[[TelemetryRecord], Any]) -> Disposer:
    return self.telemetry.add(observer)

  def on_sos(self, observer: Callable[[str], Any]) -> Disposer:
    return self.sos.add(observer)

  def dispatch(self, message: Message) -> int:
    if isinstance(message, TelemetryRecord):
      return self.telemetry.notify(message)
    if isinstance(message, SosEvent):
      return self.sos.notify(message.payload)
    if isinstance(message, DecodeFailure):
      return 0
    raise TypeError(f"unsupported message type {type(message).__name__}")

  def clear(self) -> None:
    self.telemetry.clear()
    self.sos.clear()

  def counts(self) -> Dict[str, int]:
    return {"telemetry": len(self.telemetry), "sos": len(self.sos)}
