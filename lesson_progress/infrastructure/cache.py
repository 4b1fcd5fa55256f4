import json
import redis
import structlog
from typing import Optional, Any
from .metrics import stats_cache_hits_total, stats_cache_misses_total
from ..config import settings
from ..domain.entities import ProgressStats
from ..application.use_cases.track_progress import IStatsCache

logger = structlog.get_logger(__name__)

_redis_clients: dict[str, redis.Redis] = {}

def get_redis(url: Optional[str] = None) -> redis.Redis:
    url = url or settings.REDIS_URL
    client = _redis_clients.get(url)
    if client is None:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True
        )
        _redis_clients[url] = client
    return client

def get_cache(key: str, url: Optional[str] = None) -> Optional[Any]:
    """Получить значение из кэша"""
    try:
        value = get_redis(url).get(key)
        if value:
            return json.loads(value)
    except (redis.RedisError, ValueError) as e:
        # Redis недоступен или значение битое: считаем промахом
        logger.warning("cache_get_failed", key=key, error=str(e))
    return None

def set_cache(key: str, value: Any, ttl: int = None, url: Optional[str] = None) -> bool:
    """Сохранить значение в кэш"""
    try:
        get_redis(url).setex(key, ttl or settings.CACHE_TTL, json.dumps(value, ensure_ascii=False))
        return True
    except redis.RedisError as e:
        logger.warning("cache_set_failed", key=key, error=str(e))
        return False

def delete_cache(key: str, url: Optional[str] = None) -> bool:
    """Удалить значение из кэша"""
    try:
        get_redis(url).delete(key)
        return True
    except redis.RedisError as e:
        logger.warning("cache_delete_failed", key=key, error=str(e))
        return False

def get_counter(key: str, url: Optional[str] = None) -> Optional[int]:
    """Текущее значение счётчика (0, если ключа нет); None, если Redis недоступен"""
    try:
        return int(get_redis(url).get(key) or 0)
    except (redis.RedisError, ValueError) as e:
        logger.warning("cache_counter_failed", key=key, error=str(e))
        return None

def incr_counter(key: str, url: Optional[str] = None) -> Optional[int]:
    """Увеличить счётчик на 1"""
    try:
        return get_redis(url).incr(key)
    except redis.RedisError as e:
        logger.warning("cache_counter_failed", key=key, error=str(e))
        return None


class StatsCache(IStatsCache):
    """Кэш статистики пользователя, работает по принципу best-effort.

    Каждая запись прогресса увеличивает поколение пользователя. Значение в кэше
    хранит поколение, для которого оно посчитано, и выдаётся только пока
    поколение не изменилось. Поэтому статистика, посчитанная до параллельной
    записи, не переживает её инвалидацию. Недоступный Redis означает лишь
    повторный расчёт.
    """

    prefix = "progress:stats:"

    def __init__(self, redis_url: str, ttl: int):
        self.redis_url = redis_url
        self.ttl = ttl

    def key(self, user_id: str) -> str:
        return f"{self.prefix}{user_id}"

    def generation_key(self, user_id: str) -> str:
        return f"{self.prefix}gen:{user_id}"

    def generation(self, user_id: str) -> int | None:
        return get_counter(self.generation_key(user_id), url=self.redis_url)

    def get(self, user_id: str) -> ProgressStats | None:
        cached = get_cache(self.key(user_id), url=self.redis_url)
        if cached is not None:
            generation = self.generation(user_id)
            try:
                fresh = generation is not None and int(cached["generation"]) == generation
                stats = ProgressStats.from_dict(cached["stats"]) if fresh else None
            except (KeyError, TypeError, ValueError):
                stats = None
            if stats is not None:
                stats_cache_hits_total.inc()
                return stats
        stats_cache_misses_total.inc()
        return None

    def put(self, user_id: str, stats: ProgressStats, generation: int) -> bool:
        # пока считали, запись уже сменила поколение: такое значение не кладём
        if self.generation(user_id) != generation:
            return False
        entry = {"generation": generation, "stats": stats.to_dict()}
        return set_cache(self.key(user_id), entry, ttl=self.ttl, url=self.redis_url)

    def invalidate(self, user_id: str) -> bool:
        bumped = incr_counter(self.generation_key(user_id), url=self.redis_url) is not None
        return delete_cache(self.key(user_id), url=self.redis_url) and bumped
