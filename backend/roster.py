import json
import os
from typing import Any, Dict, List, Optional

from fleet import FleetState
from geo import DistanceCache, STATUS_OFFLINE, calculate_distance, format_helmet_status

WORKER_FIELDS = ("name", "role", "blood_type", "nationality", "image", "age", "gender")

# Keys written by the mobile importer use camelCase.
FIELD_ALIASES = {
  "hat_id": ("hat_id", "hatId", "helmetId"),
  "blood_type": ("blood_type", "bloodType"),
}


def _pick(raw: Dict[str, Any], field: str) -> str:
  for key in FIELD_ALIASES.get(field, (field,)):
    value = raw.get(key)
    if value is None:
      continue
    text = str(value).strip()
    if text:
      return text
  return ""


def validate_worker_data(raw: Dict[str, Any]) -> Dict[str, str]:
  worker = {"hat_id": _pick(raw, "hat_id")}
  for field in WORKER_FIELDS:
    worker[field] = _pick(raw, field)
  return worker


def load_roster(path: str) -> Dict[str, Dict[str, str]]:
  if not path or not os.path.exists(path):
    return {}
  try:
    with open(path, "r", encoding="utf-8") as handle:
      data = json.load(handle)
  except Exception as exc:
    print(f"[roster] failed to load {path}: {exc}")
    return {}

  if isinstance(data, dict):
    data = data.get("workers")
  if not isinstance(data, list):
    print(f"[roster] ignoring {path}: expected a list of workers")
    return {}

  roster: Dict[str, Dict[str, str]] = {}
  for row in data:
    if not isinstance(row, dict):
      continue
    worker = validate_worker_data(row)
    if not worker["hat_id"]:
      continue
    roster[worker["hat_id"]] = worker
  print(f"[roster] loaded {len(roster)} workers from {path}")
  return roster


def join_roster(roster: Dict[str, Dict[str, str]], fleet: FleetState, origin: Any = None,
                cache: Optional[DistanceCache] = None) -> List[Dict[str, Any]]:
  rows: List[Dict[str, Any]] = []
  for hat_id, worker in roster.items():
    entry = fleet.get(hat_id)
    row: Dict[str, Any] = dict(worker)
    if entry is None:
      row["status_text"] = STATUS_OFFLINE.text
      row["status_color"] = STATUS_OFFLINE.color
      row["telemetry"] = None
      row["distance_km"] = None
    else:
      status = format_helmet_status(entry.record.helmet_status)
      row["status_text"] = status.text
      row["status_color"] = status.color
      row["telemetry"] = entry.to_dict()
      row["distance_km"] = calculate_distance(origin, entry.record, cache=cache) if origin is not None else None
    rows.append(row)
  return rows
