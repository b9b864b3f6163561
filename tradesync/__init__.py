"""tradesync: broker fills in, journal trades out.

Three layers:

- resilience: rate limiting, retries, circuit breakers for every external API
- reconstruction: fills -> round-trip trades
- journal: signature dedup + enrichment merge against the persisted store

Repeated syncs of the same history must converge. Nothing is counted twice.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "1.0.0"
