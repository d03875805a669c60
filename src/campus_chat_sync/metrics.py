"""Prometheus metrics for the sync engine."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REALTIME_EVENTS = Counter(
    "realtime_events_total", "Realtime change events received", ["kind"], registry=CUSTOM_REGISTRY
)
DISCARDED_EVENTS = Counter(
    "discarded_events_total",
    "Events and snapshot results dropped because their subscription was torn down",
    registry=CUSTOM_REGISTRY,
)
SNAPSHOT_FETCHES = Counter(
    "snapshot_fetches_total", "Full snapshot fetches issued", ["target"], registry=CUSTOM_REGISTRY
)
COLLABORATOR_ERRORS = Counter(
    "collaborator_errors_total", "Failed collaborator calls", ["operation", "kind"], registry=CUSTOM_REGISTRY
)
CHANNEL_INTERRUPTIONS = Counter(
    "channel_interruptions_total", "Subscriptions that left the live state", registry=CUSTOM_REGISTRY
)
