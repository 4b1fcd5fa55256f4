import time
from contextlib import contextmanager
from prometheus_client import Counter, Histogram, generate_latest
from ..domain.exceptions import NotFound

# Операции хранилища прогресса
store_operations_total = Counter(
    'progress_store_operations_total',
    'Total progress store operations',
    ['operation', 'status']
)

store_operation_duration_seconds = Histogram(
    'progress_store_operation_duration_seconds',
    'Progress store operation duration in seconds',
    ['operation']
)

# Кэш статистики
stats_cache_hits_total = Counter('progress_stats_cache_hits_total', 'Total stats cache hits')
stats_cache_misses_total = Counter('progress_stats_cache_misses_total', 'Total stats cache misses')


@contextmanager
def track_operation(operation: str):
    start_time = time.perf_counter()
    status = "ok"
    try:
        yield
    except NotFound:
        status = "not_found"
        raise
    except BaseException:
        status = "error"
        raise
    finally:
        store_operations_total.labels(operation=operation, status=status).inc()
        store_operation_duration_seconds.labels(operation=operation).observe(time.perf_counter() - start_time)


def render_metrics() -> bytes:
    """Текст метрик Prometheus из реестра по умолчанию"""
    return generate_latest()
