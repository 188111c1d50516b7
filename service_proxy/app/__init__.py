"""
Proxy Service package.

The proxy fronts the Roblox web APIs for callers that should not deal with
their pagination, credentials or inconsistent response shapes:
- Single-request passthrough with retries and a short-lived cache
- Multi-source item aggregation normalized into one canonical shape

Structure:
- app.main: FastAPI app, routes, and wiring of the components below.
- app.upstream: Request resolution and the retrying fetcher.
- app.caching: Bounded TTL/LRU store and in-flight request coalescing.
- app.aggregation: Paginated collection, field rules, and the aggregator.

Module import must not perform network calls; all IO happens in route
handlers or in explicit calls on the components.
"""
