"""
Cache package for the Authorization Service.

Memoizes permission decisions and per-user permission snapshots with
TTLs. Backends are pluggable (in-process LRU or Redis) and every backend
call is bounded by a short timeout so a slow store never stalls a check.
"""
