"""Protocol for the upstream point-of-sale order source.

The concrete HTTP client (authentication, token caching, pagination) lives
outside this repository. Workers only depend on this protocol; a factory is
loaded by dotted path at startup (see ``apps.worker.ingest_worker``).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class OrderSource(Protocol):
    """Fetch one order document from the provider."""

    def fetch_order(self, *, order_id: str, store_id: str) -> Any:
        """Return the parsed JSON body for one order.

        Implementations raise ``contracts.errors.UpstreamError`` (optionally
        with ``error_code``), ``TransientIOError`` or
        ``PermanentBusinessError``; anything else is classified by message.
        """
        ...
