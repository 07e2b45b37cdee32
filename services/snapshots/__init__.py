"""Raw snapshot storage (content-hashed upserts into ``orders_raw``)."""

from services.snapshots.raw_store import (
    RawSnapshotStore,
    UpsertOutcome,
    UpsertResult,
    canonical_json_dumps,
    payload_fingerprint,
)

__all__ = [
    "RawSnapshotStore",
    "UpsertOutcome",
    "UpsertResult",
    "canonical_json_dumps",
    "payload_fingerprint",
]
