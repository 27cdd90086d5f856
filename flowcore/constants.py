"""Default tunables shared across flowcore services."""

DEFAULT_CHANNEL = "default"
DEFAULT_QUEUE_TOPIC = "flowcore.queue_items"

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_ROUTER_BATCH_SIZE = 50
DEFAULT_WORKER_CONCURRENCY = 10

DEFAULT_OUTBOX_SWEEP_INTERVAL = 10.0
DEFAULT_OUTBOX_PUBLISH_GRACE = 30.0
DEFAULT_OUTBOX_BATCH_SIZE = 100

DEFAULT_WAITING_TTL = 7 * 24 * 3600.0
DEFAULT_RUNNING_TTL = 3600.0
DEFAULT_REAPER_SWEEP_INTERVAL = 60.0

DEFAULT_SETTLE_ATTEMPTS = 3
DEFAULT_SETTLE_RETRY_DELAY = 0.2

WAITING_TIMEOUT_MESSAGE = "execution timed out waiting for external completion"
RUNNING_TIMEOUT_MESSAGE = "execution abandoned while running"
