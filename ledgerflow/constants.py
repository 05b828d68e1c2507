"""Shared defaults for ledgerflow."""

DEFAULT_MAX_RETRIES = 0
DEFAULT_RETRY_BACKOFF = 1.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_RETRY_JITTER = 0.5

SIGNAL_TOPIC = "ledgerflow.signals"
EVENT_TOPIC_PREFIX = "events."

INPUT_NODE_ID = "__input__"
SUB_WORKFLOW_SUFFIX = "-as-step"
CHILD_TRANSACTION_SEPARATOR = ":"
