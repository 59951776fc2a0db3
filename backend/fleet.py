import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from decoder import TelemetryRecord
from geo import DistanceCache, STATUS_SOS, calculate_distance, format_helmet_status


@dataclass
class DeviceEntry:
  record: TelemetryRecord
  received_at: float

  def to_dict(self, origin: Any = None, cache: Optional[DistanceCache] = None) -> Dict[str, Any]:
    status = format_helmet_status(self.record.helmet_status)
    out = self.record.to_dict()
    out["received_at"] = self.received_at
    out["status_text"] = status.text
    out["status_color"] = status.color
    if origin is not None:
      out["distance_km"] = calculate_distance(origin, self.record, cache=cache)
    return out


class FleetState:
  """Latest telemetry per helmet, folded from the telemetry stream.

  Not thread-safe: the owner applies records from a single event loop.
  """

  def __init__(self):
    self.devices: Dict[str, DeviceEntry] = {}

  def apply(self, record: TelemetryRecord, received_at: Optional[float] = None) -> DeviceEntry:
    entry = DeviceEntry(record=record, received_at=time.time() if received_at is None else received_at)
    self.devices[record.hat_id] = entry
    return entry

  def get(self, hat_id: str) -> Optional[DeviceEntry]:
    return self.devices.get(hat_id)

  def __len__(self) -> int:
    return len(self.devices)

  def __contains__(self, hat_id: object) -> bool:
    return hat_id in self.devices

  def online_ids(self) -> List[str]:
    # Any helmet with a live record counts, whatever its status token.
    return list(self.devices)

  def sos_ids(self) -> List[str]:
    return [
      hat_id for hat_id, entry in self.devices.items()
      if format_helmet_status(entry.record.helmet_status) == STATUS_SOS
    ]

  def expire(self, ttl: float, now: Optional[float] = None) -> List[str]:
    if ttl <= 0:
      return []
    now = time.time() if now is None else now
    stale = [hat_id for hat_id, entry in self.devices.items() if now - entry.received_at > ttl]
    for hat_id in stale:
      self.devices.pop(hat_id, None)
    return stale

  def summary(self) -> Dict[str, int]:
    return {
      "devices": len(self.devices),
      "online": len(self.online_ids()),
      "sos": len(self.sos_ids()),
    }

  def snapshot(self, origin: Any = None, cache: Optional[DistanceCache] = None) -> Dict[str, Dict[str, Any]]:
    return {hat_id: entry.to_dict(origin, cache=cache) for hat_id, entry in self.devices.items()}
