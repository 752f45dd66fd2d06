"""Infrastructure layer — cross-cutting support for the sync server.

Modules:
    metrics     Prometheus metrics registry.
    retry       Async retry decorator for transient file I/O.
    log_config  Root logger setup (stderr, one format).
"""
