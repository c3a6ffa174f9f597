from cbt.connections.mongo import mongo_lifespan
from cbt.connections.redis import redis_lifespan

__all__ = ["mongo_lifespan", "redis_lifespan"]
