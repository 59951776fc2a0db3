class MqttConnectionError(ConnectionError):
  """The broker link could not be established."""


class NotConnectedError(RuntimeError):
  """Publish attempted without a live broker link."""


class DecodeError(ValueError):
  """A frame did not match the wire format of its topic."""


class ObserverError(Exception):
  """An observer callback raised while a message was being fanned out."""

  def __init__(self, observer, item, cause: BaseException):
    self.observer = observer
    self.item = item
    self.cause = cause
    name = getattr(observer, "__qualname__", None) or repr(observer)
    super().__init__(f"observer {name} failed: {cause!r}")
