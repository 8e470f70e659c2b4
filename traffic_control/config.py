"""
config.py - Configuration constants for the Distributed Traffic Control Network.

All durations are in seconds of simulated time.
"""

# Well-known actor ids
REGISTRY_ID = 'registry'
COORDINATOR_ID = 'coordinator'
ORCHESTRATOR_ID = 'orchestrator'

# Simulated network
NETWORK_LATENCY = 0.010
NETWORK_JITTER = 0.005  # uniform 0..jitter on top of the base latency
LOG_CAPACITY = 500
SNAPSHOT_LOG_LIMIT = 100

# Registry (liveness)
LIVENESS_SWEEP_INTERVAL = 5.0
HEARTBEAT_TIMEOUT = 10.0

# Coordinator
GLOBAL_PASS_INTERVAL = 5.0
DEFAULT_GREEN_DURATION = 30
DEFAULT_YELLOW_DURATION = 5
DEFAULT_RED_DURATION = 30
MIN_GREEN = 15
MAX_GREEN = 60
MIN_RED = 15
MAX_RED = 60
ADJUSTMENT_THRESHOLD = 3  # Only adjust if difference is > 3 seconds
LONG_WAIT_THRESHOLD = 60
SHORT_WAIT_THRESHOLD = 15
WAIT_TIME_CORRECTION = 5

# Edge node
HEARTBEAT_INTERVAL = 3.0
METRICS_INTERVAL = 2.0
BASE_TRAFFIC = 10
TRAFFIC_VARIABILITY = 0.3
RUSH_HOUR_MULTIPLIER = 2.5

# Driver presets (name, intersection)
INTERSECTION_PRESETS = [
    ('North Light', 'Main Ave & 1st St'),
    ('South Light', 'Main Ave & 5th St'),
    ('East Light', 'Central St & Commerce Ave'),
    ('West Light', 'Central St & Residential Ave'),
    ('Center Light', 'Main Square'),
    ('Hospital Light', 'Health Ave & Emergency St'),
    ('School Light', 'Education St & Youth Ave'),
    ('Terminal Light', 'Transport Ave & Terminal St'),
]
