"""
Redis store for fitted per-medicine model components.

Entries expire after `cache_ttl_seconds`, so models are refitted on fresh
history at least that often.
"""

import json
from typing import Optional

import redis
import structlog

from .methods.base import ModelComponents
from .models import EngineConfig

logger = structlog.get_logger(__name__)

KEY_PREFIX = "medwatch:model"


def model_key(method_name: str, medicine_id: str, metric: str) -> str:
    return f"{KEY_PREFIX}:{method_name}:{medicine_id}:{metric}"


class RedisCache:
    """Model component cache keyed by method, medicine and metric"""

    def __init__(self, config: EngineConfig, client: redis.Redis | None = None):
        self.ttl = config.cache_ttl_seconds
        self.redis = client or redis.Redis(
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            decode_responses=True,
        )
        try:
            self.redis.ping()
        except Exception as e:
            logger.error("Redis unreachable", host=config.redis_host, error=str(e))
            raise
        logger.info("Model cache connected", host=config.redis_host, ttl_seconds=self.ttl)

    def ping(self) -> bool:
        return bool(self.redis.ping())

    def save_model(self, model: ModelComponents) -> bool:
        """Store fitted components; a failed write is logged and reported as False"""
        key = model_key(model.method_name, model.entity_id, model.metric_name)
        try:
            self.redis.setex(key, self.ttl, json.dumps(model.to_dict()))
        except Exception as e:
            logger.error("Model cache write failed", key=key, error=str(e))
            return False
        logger.debug("Model cached", key=key)
        return True

    def load_model(
        self, medicine_id: str, metric: str, method_name: str
    ) -> Optional[ModelComponents]:
        """Cached components, or None on a miss or an unreadable entry"""
        key = model_key(method_name, medicine_id, metric)
        try:
            payload = self.redis.get(key)
            if payload is None:
                return None
            return ModelComponents.from_dict(json.loads(payload))
        except Exception as e:
            logger.error("Model cache read failed", key=key, error=str(e))
            return None

    def close(self):
        self.redis.close()
