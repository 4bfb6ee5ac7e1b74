"""
Authorization Service package.

Decides whether an authenticated user may perform an action on a
resource. It provides:

- app.permissions: Permission model, role catalog, condition evaluation
  and the core decision algorithm.
- app.guard: Resource-level access (ownership, role bypass, inheritance)
  and data-layer filter construction.
- app.cache: Decision cache with TTLs and pattern invalidation.
- app.audit: Batched, best-effort audit trail of every decision.
- app.service: Facade wiring the components together.
- app.main: HTTP policy-decision endpoints.

Guidelines:
- Denial is a normal result, not an exception.
- Decisions must be deterministic for identical inputs so caching is sound.
- Any change to what a user or role may do invalidates its cache entries.
"""
