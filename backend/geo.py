import math
import threading
import time
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from config import DISTANCE_CACHE_MAX, DISTANCE_CACHE_TTL

# Same earth radius as the haversine-distance package used by the mobile app.
EARTH_RADIUS_M = 6378137.0


def _haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
  phi1 = math.radians(lat1)
  phi2 = math.radians(lat2)
  dphi = math.radians(lat2 - lat1)
  dlambda = math.radians(lon2 - lon1)
  a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
  c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
  return EARTH_RADIUS_M * c


def _coord(point: Any, key: str) -> Optional[float]:
  if point is None:
    return None
  if isinstance(point, dict):
    value = point.get(key)
  else:
    value = getattr(point, key, None)
  if value is None or isinstance(value, bool):
    return None
  try:
    num = float(value)
  except (TypeError, ValueError):
    return None
  if not math.isfinite(num):
    return None
  return num


def lat_lon(point: Any) -> Optional[Tuple[float, float]]:
  lat = _coord(point, "latitude")
  lon = _coord(point, "longitude")
  if lat is None or lon is None:
    return None
  return lat, lon


class DistanceCache:
  """Time-bounded memo of rounded distances.

  Entries expire after `ttl` seconds; once more than `max_entries` are held
  the oldest inserted entry is dropped (FIFO, hits do not refresh order).
  """

  def __init__(self, ttl: float = DISTANCE_CACHE_TTL, max_entries: int = DISTANCE_CACHE_MAX,
               clock: Callable[[], float] = time.monotonic):
    self.ttl = ttl
    self.max_entries = max_entries
    self._clock = clock
    self._lock = threading.Lock()
    self._entries: Dict[str, Tuple[float, float]] = {}
    self.hits = 0
    self.misses = 0

  @staticmethod
  def key(start: Tuple[float, float], end: Tuple[float, float]) -> str:
    return f"{start[0]},{start[1]}-{end[0]},{end[1]}"

  def get(self, key: str) -> Optional[float]:
    now = self._clock()
    with self._lock:
      cached = self._entries.get(key)
      if cached is None:
        self.misses += 1
        return None
      distance, ts = cached
      if now - ts < self.ttl:
        self.hits += 1
        return distance
      del self._entries[key]
      self.misses += 1
      return None

  def put(self, key: str, distance: float) -> None:
    now = self._clock()
    with self._lock:
      self._entries[key] = (distance, now)
      while len(self._entries) > self.max_entries:
        oldest = next(iter(self._entries))
        del self._entries[oldest]

  def clear(self) -> None:
    with self._lock:
      self._entries.clear()
      self.hits = 0
      self.misses = 0

  def __len__(self) -> int:
    with self._lock:
      return len(self._entries)

  def stats(self) -> Dict[str, Any]:
    with self._lock:
      return {
        "distance_cache_size": len(self._entries),
        "max_entries": self.max_entries,
        "ttl_seconds": self.ttl,
        "hits": self.hits,
        "misses": self.misses,
      }


distance_cache = DistanceCache()


def calculate_distance(origin: Any, target: Any, cache: Optional[DistanceCache] = None) -> Optional[float]:
  start = lat_lon(origin)
  end = lat_lon(target)
  if start is None or end is None:
    return None

  cache = cache if cache is not None else distance_cache
  key = DistanceCache.key(start, end)
  cached = cache.get(key)
  if cached is not None:
    return cached

  distance_km = round(_haversine_m(start[0], start[1], end[0], end[1]) / 1000.0, 2)
  cache.put(key, distance_km)
  return distance_km


def clear_caches() -> None:
  distance_cache.clear()


def get_cache_stats() -> Dict[str, Any]:
  return distance_cache.stats()


# =========================
# Helmet status
# =========================
class StatusInfo(NamedTuple):
  text: str
  color: str


STATUS_NORMAL = StatusInfo("normal", "green")
STATUS_SOS = StatusInfo("sos", "red")
STATUS_OFFLINE = StatusInfo("offline", "gray")

SOS_TOKENS = ("1", "sos", "emergency")


def format_helmet_status(status: Any) -> StatusInfo:
  if isinstance(status, bool) or status is None:
    return STATUS_OFFLINE
  if isinstance(status, (int, float)):
    if status == 0:
      return STATUS_NORMAL
    if status == 1:
      return STATUS_SOS
    return STATUS_OFFLINE
  if isinstance(status, str):
    token = status.strip().lower()
    if token == "0":
      return STATUS_NORMAL
    if token in SOS_TOKENS:
      return STATUS_SOS
  return STATUS_OFFLINE
