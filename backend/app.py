import asyncio
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Set

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import (
  DEVICE_TTL_SECONDS,
  HTTP_HOST,
  HTTP_PORT,
  REAPER_INTERVAL,
  ROSTER_FILE,
)
from decoder import SosEvent, TelemetryRecord
from errors import MqttConnectionError, NotConnectedError
from fleet import FleetState
from geo import calculate_distance, distance_cache
from mqtt_manager import ConnectionManager
from roster import join_roster, load_roster

# =========================
# App / State
# =========================
@asynccontextmanager
async def lifespan(_: FastAPI):
  await startup()
  try:
    yield
  finally:
    await shutdown()


app = FastAPI(lifespan=lifespan)

manager: Optional[ConnectionManager] = None
fleet = FleetState()
roster: Dict[str, Dict[str, str]] = {}
clients: Set[WebSocket] = set()
update_queue: Optional[asyncio.Queue] = None
background_tasks: List[asyncio.Task] = []

stats = {
  "telemetry_applied": 0,
  "sos_received": 0,
  "last_sos_ts": None,
  "last_sos_payload": None,
}


class SosRequest(BaseModel):
  hat_id: Optional[str] = None


def build_manager() -> ConnectionManager:
  return ConnectionManager()


def _origin(lat: Optional[float], lon: Optional[float]) -> Optional[Dict[str, float]]:
  if lat is None or lon is None:
    return None
  return {"latitude": lat, "longitude": lon}


# =========================
# Observers (run on the MQTT network thread)
# =========================
def _make_observers(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
  def on_telemetry(record: TelemetryRecord) -> None:
    loop.call_soon_threadsafe(queue.put_nowait, {"type": "telemetry", "record": record, "ts": time.time()})

  def on_sos(payload: str) -> None:
    loop.call_soon_threadsafe(queue.put_nowait, {"type": "sos", "payload": payload, "ts": time.time()})

  return on_telemetry, on_sos


# =========================
# Broadcaster / Reaper
# =========================
async def _broadcast(payload: Dict[str, Any]) -> None:
  text = json.dumps(payload)
  dead = []
  for ws in list(clients):
    try:
      await ws.send_text(text)
    except Exception:
      dead.append(ws)
  for ws in dead:
    clients.discard(ws)


def apply_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
  kind = event.get("type")
  if kind == "telemetry":
    entry = fleet.apply(event["record"], received_at=event.get("ts"))
    stats["telemetry_applied"] += 1
    return {"type": "telemetry", "device": entry.to_dict()}
  if kind == "sos":
    sos = SosEvent(payload=event["payload"])
    stats["sos_received"] += 1
    stats["last_sos_ts"] = event.get("ts")
    stats["last_sos_payload"] = sos.payload
    print(f"[app] SOS received payload={sos.payload!r} broadcast={sos.is_broadcast}")
    return {"type": "sos", "payload": sos.payload, "broadcast": sos.is_broadcast, "ts": event.get("ts")}
  return None


async def broadcaster(queue: asyncio.Queue):
  while True:
    event = await queue.get()
    try:
      payload = apply_event(event)
    except Exception as exc:
      print(f"[app] failed to apply event type={event.get('type')}: {exc!r}")
      continue
    if payload is not None:
      await _broadcast(payload)


async def reaper():
  while True:
    stale = fleet.expire(DEVICE_TTL_SECONDS)
    if stale:
      await _broadcast({"type": "stale", "hat_ids": stale})
    await asyncio.sleep(REAPER_INTERVAL)


async def _connect_once(current: ConnectionManager) -> None:
  try:
    await current.connect()
  except MqttConnectionError as exc:
    print(f"[app] broker connection failed: {exc}")


# =========================
# FastAPI routes
# =========================
@app.get("/status")
def get_status():
  link = manager.get_status() if manager is not None else {
    "connected": False,
    "connecting": False,
    "reconnect_attempts": 0,
    "state": "disconnected",
  }
  return {
    "link": link,
    "fleet": fleet.summary(),
    "server_time": time.time(),
  }


@app.get("/snapshot")
def snapshot(lat: Optional[float] = None, lon: Optional[float] = None):
  return {
    "devices": fleet.snapshot(_origin(lat, lon)),
    "online": fleet.online_ids(),
    "sos": fleet.sos_ids(),
    "server_time": time.time(),
  }


@app.get("/stats")
def get_stats():
  return {
    "mqtt": dict(manager.stats) if manager is not None else {},
    "listeners": manager.dispatcher.counts() if manager is not None else {},
    "app": stats,
    "distance_cache": distance_cache.stats(),
    "server_time": time.time(),
  }


@app.get("/workers")
def workers(lat: Optional[float] = None, lon: Optional[float] = None):
  rows = join_roster(roster, fleet, _origin(lat, lon))
  return {"count": len(rows), "workers": rows}


@app.get("/distance")
def distance(lat1: float, lon1: float, lat2: float, lon2: float):
  km = calculate_distance(_origin(lat1, lon1), _origin(lat2, lon2))
  if km is None:
    return {"ok": False, "error": "invalid_coords"}
  return {"ok": True, "distance_km": km}


@app.post("/sos")
def send_sos(request: Optional[SosRequest] = None):
  hat_id = request.hat_id if request is not None else None
  if manager is None:
    return JSONResponse(status_code=503, content={"ok": False, "error": "not_connected"})
  try:
    payload = manager.publish_sos(hat_id)
  except NotConnectedError as exc:
    print(f"[app] SOS not sent: {exc}")
    return JSONResponse(status_code=503, content={"ok": False, "error": "not_connected"})
  return {"ok": True, "payload": payload}


@app.websocket("/ws")
async def ws_endpoint(ws: WebSocket):
  await ws.accept()
  clients.add(ws)

  await ws.send_text(json.dumps({
    "type": "snapshot",
    "devices": fleet.snapshot(),
    "link": manager.get_status() if manager is not None else None,
  }))

  try:
    while True:
      await ws.receive_text()
  except WebSocketDisconnect:
    pass
  except RuntimeError:
    pass
  finally:
    clients.discard(ws)


# =========================
# Startup / Shutdown
# =========================
async def startup():
  global manager, roster, update_queue

  roster = load_roster(ROSTER_FILE)

  loop = asyncio.get_running_loop()
  update_queue = asyncio.Queue()
  manager = build_manager()
  on_telemetry, on_sos = _make_observers(loop, update_queue)
  manager.on_telemetry(on_telemetry)
  manager.on_sos(on_sos)

  background_tasks.append(asyncio.create_task(broadcaster(update_queue)))
  background_tasks.append(asyncio.create_task(reaper()))
  background_tasks.append(asyncio.create_task(_connect_once(manager)))


async def shutdown():
  global manager
  for task in background_tasks:
    task.cancel()
  background_tasks.clear()
  if manager is not None:
    manager.disconnect()
    manager = None


def main() -> None:
  uvicorn.run(app, host=HTTP_HOST, port=HTTP_PORT)


if __name__ == "__main__":
  main()
