from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from app.core.settings import settings


def arq_redis_settings() -> RedisSettings:
    rs = RedisSettings.from_dsn(settings.REDIS_URL)
    if settings.REDIS_PASSWORD:
        rs.password = settings.REDIS_PASSWORD
    return rs


async def make_arq_pool() -> ArqRedis:
    return await create_pool(arq_redis_settings())
