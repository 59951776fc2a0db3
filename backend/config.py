import os

# =========================
# Env / Config
# =========================
MQTT_HOST = os.getenv("MQTT_HOST", "ionlypfw.thddns.net")
MQTT_PORT = int(os.getenv("MQTT_PORT", "2025"))
MQTT_USERNAME = os.getenv("MQTT_USERNAME", "smarthelmet")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD", "smarthelmet")

MQTT_TRANSPORT = os.getenv("MQTT_TRANSPORT", "websockets").strip().lower()  # tcp | websockets
if MQTT_TRANSPORT not in ("tcp", "websockets"):
  MQTT_TRANSPORT = "tcp"
MQTT_WS_PATH = os.getenv("MQTT_WS_PATH", "/")

MQTT_CLIENT_ID = os.getenv("MQTT_CLIENT_ID", "")

try:
  MQTT_KEEPALIVE = int(os.getenv("MQTT_KEEPALIVE", "60"))
except ValueError:
  MQTT_KEEPALIVE = 60
try:
  MQTT_CONNECT_TIMEOUT = float(os.getenv("MQTT_CONNECT_TIMEOUT", "30"))
except ValueError:
  MQTT_CONNECT_TIMEOUT = 30.0
try:
  MQTT_RECONNECT_DELAY = int(os.getenv("MQTT_RECONNECT_DELAY", "1"))
except ValueError:
  MQTT_RECONNECT_DELAY = 1
if MQTT_RECONNECT_DELAY < 1:
  MQTT_RECONNECT_DELAY = 1
try:
  MQTT_MAX_RECONNECT_ATTEMPTS = int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "5"))
except ValueError:
  MQTT_MAX_RECONNECT_ATTEMPTS = 5

# Wire topics are part of the helmet firmware contract.
TOPIC_DATA = "data"
TOPIC_SOS = "soschannel"
SOS_BROADCAST = "sos"
TELEMETRY_FIELD_COUNT = 7

DEVICE_TTL_SECONDS = int(os.getenv("DEVICE_TTL_SECONDS", "300"))
REAPER_INTERVAL = float(os.getenv("REAPER_INTERVAL", "5"))

try:
  DISTANCE_CACHE_TTL = float(os.getenv("DISTANCE_CACHE_TTL", "30"))
except ValueError:
  DISTANCE_CACHE_TTL = 30.0
try:
  DISTANCE_CACHE_MAX = int(os.getenv("DISTANCE_CACHE_MAX", "100"))
except ValueError:
  DISTANCE_CACHE_MAX = 100
if DISTANCE_CACHE_MAX < 1:
  DISTANCE_CACHE_MAX = 100

STATE_DIR = os.getenv("STATE_DIR", "/data")
ROSTER_FILE = os.getenv("ROSTER_FILE", os.path.join(STATE_DIR, "workers.json"))

DEBUG_PAYLOAD = os.getenv("DEBUG_PAYLOAD", "false").lower() == "true"
DEBUG_PAYLOAD_MAX = int(os.getenv("DEBUG_PAYLOAD_MAX", "400"))

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))
