import math
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Union

from config import SOS_BROADCAST, TELEMETRY_FIELD_COUNT, TOPIC_DATA, TOPIC_SOS
from errors import DecodeError

# Leading-number coercion: "12.5abc" -> 12.5, "abc" -> nan
RE_LEADING_FLOAT = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[+-]?Infinity)")
RE_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


@dataclass(frozen=True)
class TelemetryRecord:
  hat_id: str
  helmet_status: str
  g_force: float
  acceleration: float
  latitude: float
  longitude: float
  heart_rate: Union[int, float]

  @property
  def has_fix(self) -> bool:
    return math.isfinite(self.latitude) and math.isfinite(self.longitude)

  def to_dict(self) -> Dict[str, Any]:
    out = asdict(self)
    for key, value in out.items():
      if isinstance(value, float) and not math.isfinite(value):
        out[key] = None
    return out


@dataclass(frozen=True)
class SosEvent:
  payload: str

  @property
  def is_broadcast(self) -> bool:
    return self.payload.strip().lower() == SOS_BROADCAST


@dataclass(frozen=True)
class DecodeFailure:
  topic: str
  payload: str
  reason: str


Message = Union[TelemetryRecord, SosEvent, DecodeFailure]


def parse_float(value: str) -> float:
  match = RE_LEADING_FLOAT.match(value)
  if not match:
    return math.nan
  token = match.group(1)
  if token.endswith("Infinity"):
    return -math.inf if token.startswith("-") else math.inf
  return float(token)


def parse_int(value: str) -> Union[int, float]:
  match = RE_LEADING_INT.match(value)
  if not match:
    return math.nan
  return int(match.group(1))


def parse_helmet_data(raw: str) -> TelemetryRecord:
  parts = raw.split(",")
  if len(parts) != TELEMETRY_FIELD_COUNT:
    raise DecodeError(f"expected {TELEMETRY_FIELD_COUNT} fields, got {len(parts)}")

  hat_id, status, g_force, acceleration, lat, lon, heart_rate = parts
  return TelemetryRecord(
    hat_id=hat_id,
    helmet_status=status,
    g_force=parse_float(g_force),
    acceleration=parse_float(acceleration),
    latitude=parse_float(lat),
    longitude=parse_float(lon),
    heart_rate=parse_int(heart_rate),
  )


def payload_text(payload: Union[bytes, bytearray, str]) -> str:
  if isinstance(payload, (bytes, bytearray)):
    return bytes(payload).decode("utf-8", errors="replace")
  return str(payload)


def decode_message(topic: str, payload: Union[bytes, bytearray, str]) -> Message:
  text = payload_text(payload)
  if topic == TOPIC_DATA:
    try:
      return parse_helmet_data(text)
    except DecodeError as exc:
      return DecodeFailure(topic=topic, payload=text, reason=str(exc))
  if topic == TOPIC_SOS:
    return SosEvent(payload=text)
  return DecodeFailure(topic=topic, payload=text, reason="unknown_topic")
