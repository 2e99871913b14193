import os
from pathlib import Path

CACHE_DIR = Path(
    os.environ.get("MEDIA_SEARCH_CACHE_DIR", Path.home() / ".cache" / "media-search")
).resolve()

BLOB_DIR = CACHE_DIR / "indexes"

PHOTOS_LIBRARY = Path(
    os.environ.get(
        "MEDIA_SEARCH_PHOTOS_LIBRARY",
        Path.home() / "Pictures" / "Photos Library.photoslibrary",
    )
)

GEO_INDEX_KEY = "geohash_index.json"
LABEL_INDEX_KEY = "label_index.json"
ACTIVITY_INDEX_KEY = "activity_index.json"

SAVE_INTERVAL = 100  # save state every N assets during label indexing

# -- geo --

GEOHASH_PRECISION = 6
GEOHASH_MIN_PREFIX = 4
GEO_PROGRESS_INTERVAL = 100

LOCATION_SEARCH_RADIUS_KM = 2.0
RESOLVED_PLACE_RADIUS_KM = 20.0
REGION_RADIUS_KM = 50.0
LLM_COORDINATE_RADIUS_KM = 25.0

# -- labels --

LABEL_MIN_CONFIDENCE = 0.4
MAX_LABELS_PER_ASSET = 10
LABEL_THUMBNAIL_SIZE = 299
LABEL_PROGRESS_INTERVAL = 10

CLASSIFIER_MODEL = os.environ.get("MEDIA_SEARCH_CLASSIFIER_MODEL", "ViT-B-16-SigLIP")
CLASSIFIER_PRETRAINED = os.environ.get("MEDIA_SEARCH_CLASSIFIER_PRETRAINED", "webli")

# -- video --

VIDEO_CONCURRENCY = 3
VIDEO_SAVE_INTERVAL = 10
FRAME_POSITIONS = (0.25, 0.5, 0.75)
FRAME_MAX_SIZE = 512
AUDIO_SEGMENT_SECONDS = 30.0
SCREEN_LABELS = {"computer_screen", "monitor", "screenshot", "display"}

# -- search --

TRIP_MAX_GAP_DAYS = 5
TRIP_CLUSTER_MIN_MATCHES = 10  # cluster only when location matches exceed this
# Inferred labels are dropped once location produced at least this many results.
LABEL_SKIP_LOCATION_THRESHOLD = 1
DEFAULT_SEARCH_LIMIT = 100

# -- language services (OpenAI-compatible API) --

LLM_BASE_URL = os.environ.get("MEDIA_SEARCH_LLM_BASE_URL", "https://api.groq.com/openai/v1")
LLM_API_KEY_ENV = "GROQ_API_KEY"
CHAT_MODEL = os.environ.get("MEDIA_SEARCH_CHAT_MODEL", "llama-3.3-70b-versatile")
VISION_MODEL = os.environ.get(
    "MEDIA_SEARCH_VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct"
)
TRANSCRIPTION_MODEL = os.environ.get("MEDIA_SEARCH_TRANSCRIPTION_MODEL", "whisper-large-v3-turbo")
LLM_TIMEOUT = 60.0

# -- geocoding --

GEOCODER_URL = os.environ.get("MEDIA_SEARCH_GEOCODER_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT = "media-search/0.1 (local photo library search)"
GEOCODER_TIMEOUT = 10.0

# Person tag that marks the library owner in face recognition.
SELF_PERSON_NAME = os.environ.get("MEDIA_SEARCH_SELF_NAME", "")

# -- service daemon --

SERVICE_PORT = int(os.environ.get("MEDIA_SEARCH_PORT", "7830"))
SERVICE_HOST = "127.0.0.1"
SERVICE_PID_FILE = Path("/tmp/mcp-tools/media-search.pid")
SERVICE_STARTUP_TIMEOUT = 60  # seconds to wait for health check
NICE_VALUE = 15
