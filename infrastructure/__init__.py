"""Infrastructure layer — resilience and caching for the Odoo CRM integration.

Modules:
    settings                Environment-driven configuration (.env aware).
    logging_setup           stderr logging for the stdio tool-call transport.
    metrics                 Prometheus metrics registry.
    errors                  CircuitOpenError, CacheBackendError.
    cache_base              CacheProvider protocol + stale-while-revalidate.
    cache_memory            In-process LRU backend (default).
    cache_redis             Redis backend for multi-instance deployments.
    cache                   Cache factory, CACHE_TTL, CACHE_KEYS.
    circuit_breaker         Three-state circuit breaker for Odoo calls.
    shared_circuit_breaker  One breaker shared by the whole connection pool.
    retry                   Error classification + exponential backoff retry.
    context                 ResilienceContext composing all of the above.
"""
