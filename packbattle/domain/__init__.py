"""Domain layer (pure logic).

- Keep battle rules and calculations here.
- Avoid I/O: no DB sessions, no HTTP/FastAPI, no Redis.
- Prefer deterministic functions (random sources passed in as arguments).
"""
