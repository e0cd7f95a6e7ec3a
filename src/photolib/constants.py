"""Project-wide named constants.

Timeouts and retry limits here are defaults; ``LibraryConfig`` can
override them per task kind.
"""

# Bytes read from the head of a file for the import-time quick hash.
QUICK_HASH_PREFIX_BYTES: int = 64 * 1024

MIN_RATING: int = 0
MAX_RATING: int = 5

# Label substrings that drive the faces / documents helpers.
FACE_LABEL: str = "face"
DOCUMENT_LABEL: str = "document"
SCREENSHOT_MARKER: str = "screenshot"

CANCELLED_ERROR: str = "cancelled"
TIMEOUT_ERROR: str = "timeout"
DEPENDENCY_FAILED_PREFIX: str = "dependency failed: "
INTERRUPTED_ERROR: str = "interrupted"

# Seconds. Keys are TaskKind values.
DEFAULT_TASK_TIMEOUTS: dict[str, float] = {
    "bookmark_resolve": 30.0,
    "quick_hash": 30.0,
    "exif": 30.0,
    "thumbnail": 10.0,
    "full_hash": 30.0,
    "ai_tagging": 60.0,
    "embeddings": 60.0,
    "faces": 60.0,
}

# Automatic retries after the first failure. AI kinds surface to the user.
DEFAULT_RETRY_LIMITS: dict[str, int] = {
    "bookmark_resolve": 3,
    "quick_hash": 3,
    "exif": 1,
    "thumbnail": 1,
    "full_hash": 1,
    "ai_tagging": 0,
    "embeddings": 0,
    "faces": 0,
}

RETRY_BASE_DELAY_SECONDS: float = 1.0
RETRY_MAX_DELAY_SECONDS: float = 60.0

DEFAULT_POOL_SIZE: int = 4
DEFAULT_LIBRARY_FILE: str = "data/library.json"

# File extensions picked up when importing a directory.
IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".jpg", ".jpeg", ".png", ".heic", ".tif", ".tiff", ".gif", ".webp", ".dng"}
)
