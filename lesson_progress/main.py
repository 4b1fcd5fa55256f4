import structlog
from sqlalchemy import text

from .config import Settings, settings
from .infrastructure.db import make_engine, make_session_factory
from .infrastructure.models import Base
from .infrastructure.log import configure_logging
from .infrastructure.cache import StatsCache
from .infrastructure.repositories import SqlAlchemyProgressStore
from .application.use_cases.track_progress import ProgressTracker

logger = structlog.get_logger(__name__)


def build_tracker(config: Settings = settings) -> ProgressTracker:
    """Настроить логирование, подготовить БД и вернуть готовый трекер"""
    configure_logging(config.LOG_LEVEL)
    logger.info("Starting progress tracker", version="0.1.0")

    engine = make_engine(config)
    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("Database connection established")

    stats_cache = None
    if config.STATS_CACHE_ENABLED:
        stats_cache = StatsCache(redis_url=config.REDIS_URL, ttl=config.CACHE_TTL)
    store = SqlAlchemyProgressStore(make_session_factory(engine), max_retries=config.DB_MERGE_RETRIES)
    return ProgressTracker(store, stats_cache=stats_cache)
