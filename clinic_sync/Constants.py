# Constants.py
# Description: Constants for the sync engine
#
# Imports
#
# 3rd-Party Imports
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Identifiers ---
TEMP_ID_PREFIX = "temp-"

# --- Sync metadata keys ---
META_LAST_SYNC_TIMESTAMP = "last_sync_timestamp"
META_LAST_ERROR = "last_error"
META_SYNC_IN_PROGRESS = "sync_in_progress"
META_DEVICE_ID = "device_id"
META_LAST_PUSH_AT = "last_push_at"

# --- Timing defaults (seconds) ---
HEALTH_CHECK_TIMEOUT = 5.0
HEALTH_CHECK_RETRY_DELAY = 10.0
RECONNECT_SETTLE_DELAY = 1.0
PERIODIC_PULL_INTERVAL = 5 * 60.0
REQUEST_TIMEOUT = 30.0

# --- Retention ---
MAX_QUEUE_ATTEMPTS = 10
MAX_QUEUE_AGE_DAYS = 3

#
# End of Constants.py
########################################################################################################################
