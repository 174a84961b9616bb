"""
System-Wide Constants for the Lap Counter

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000

# =============================================================================
# STORAGE LAYOUT
# =============================================================================
DEFAULT_KEY_PREFIX: Final[str] = "sessions"
PARTICIPANTS_SEGMENT: Final[str] = "participants"
DOCUMENT_SUFFIX: Final[str] = ".json"
DEFAULT_STORE_DIR: Final[str] = "./data/blobs"
DEFAULT_S3_BUCKET: Final[str] = "lapcounter-sessions"
DEFAULT_S3_REGION: Final[str] = "us-east-1"
DEFAULT_REDIS_URL: Final[str] = "redis://localhost:6379/0"
LIST_PAGE_SIZE: Final[int] = 1000

# lz4 frame magic number (little-endian 0x184D2204)
LZ4_FRAME_MAGIC: Final[bytes] = b"\x04\x22\x4d\x18"

# =============================================================================
# RECONCILER / RETRY
# =============================================================================
RETRY_MAX_ATTEMPTS: Final[int] = 3
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_DELAY_MS: Final[int] = 2 * SECOND_MS
STORE_TIMEOUT_S: Final[float] = 10.0

# =============================================================================
# DOMAIN LIMITS
# =============================================================================
MAX_TOTAL_LAPS: Final[int] = 10_000
MAX_PARTICIPANTS: Final[int] = 500
MAX_NAME_LENGTH: Final[int] = 200

# =============================================================================
# HTTP
# =============================================================================
DEFAULT_HOST: Final[str] = "127.0.0.1"
DEFAULT_PORT: Final[int] = 8080
MAX_REQUEST_BYTES: Final[int] = 1024 * 1024
