"""Constant definitions for botrelay."""

# Bot reply vocabulary. Coupled to the third-party bot's wording.
MENU_MARKERS = ("📹", "🎬")
QUALITY_LABELS = ("1080p", "720p", "480p", "360p", "240p", "144p", "MP3")
AUDIO_ONLY_LABEL = "MP3"
PROGRESS_MARKERS = ("📥 Downloading", "■")

# Correlation deadlines
MENU_TIMEOUT_SECONDS = 30
PAYLOAD_TIMEOUT_SECONDS = 120
PROGRESS_RETENTION_SECONDS = 60
KIND_TRACKER_WINDOW_SECONDS = 30

# Connection lifecycle
RECONNECT_DELAY_SECONDS = 5
KEEPALIVE_INTERVAL_SECONDS = 30
KEEPALIVE_TIMEOUT_SECONDS = 15
CONNECTION_RETRIES = 15
REQUEST_RETRIES = 5
CLIENT_TIMEOUT_SECONDS = 60
FLOOD_SLEEP_THRESHOLD = 60

# Bot entity lookup
ENTITY_LOOKUP_ATTEMPTS = 3
ENTITY_LOOKUP_DELAY_SECONDS = 2

# Disk hygiene
RETENTION_SECONDS = 3600
CLEANUP_INTERVAL_SECONDS = 600

# Transfer progress logging
TRANSFER_LOG_INTERVAL_SECONDS = 2
TRANSFER_LOG_STEP_PERCENT = 10

# Progress record statuses
STATUS_REQUESTING = "Requesting video from bot..."
STATUS_TIMEOUT = "Download timeout - bot did not send video"
STATUS_NOT_FOUND = "Request not found"
