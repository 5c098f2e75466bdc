"""
Access Core package for the marketplace platform.

Decides whether an actor may perform an action on a resource and arbitrates
exclusive edits of shared entities. It provides:

- app.store: KeyValueStore contract with Redis and in-memory implementations.
- app.cache: Multi-tier cache middleware with request dedup and tag invalidation.
- app.permissions: Permission model, role aggregation, bundle cache, evaluator.
- app.locks: TTL-bounded, ownership-checked entity locks.
- app.gate: AccessGate facade and the wiring factory.

Guidelines:
- Build one CacheMiddleware per process and inject it; no module-level state.
- Fail closed: anything short of a matching grant is a deny.
- Invalidate and reload; never patch cached bundles in place.
"""
