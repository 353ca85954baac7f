"""Default values shared across phaseflow modules."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 1.5
DEFAULT_BACKOFF_JITTER = 0.5
DEFAULT_MAX_BACKOFF = 30.0

# Seconds without a chunk from a runner before it is considered dead.
DEFAULT_LIVENESS_TIMEOUT = 300.0

# Upper bound for loops that do not declare ``max_iterations``.
DEFAULT_MAX_ITERATIONS = 1000

DEFAULT_EVENT_QUEUE_SIZE = 1000
EVENT_TOPIC_PREFIX = "phaseflow.events"

# Edge labels with routing meaning for gate and loop phases.
GATE_PASS_LABEL = "pass"
GATE_FAIL_LABEL = "fail"
LOOP_BODY_LABEL = "body"
LOOP_EXIT_LABEL = "exit"
LOOP_EXHAUSTED_LABEL = "exhausted"
