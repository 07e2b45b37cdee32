"""Project version constants.

``SCHEMA_VERSION`` is the newest migration the code expects; workers log it
at startup so a deployment can be traced back to its schema.
"""

ENGINE_NAME: str = "salesflow"
ENGINE_VERSION: str = "0.1.0"

SCHEMA_VERSION: str = "002_backfill_payload_hash"
