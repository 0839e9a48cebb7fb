from fastapi import APIRouter, HTTPException, Request
import redis.asyncio as aioredis

from feedrelay.core.config import settings, logger

router = APIRouter()


async def redis_ping(url: str) -> bool:
    client = aioredis.from_url(url)
    try:
        return bool(await client.ping())
    finally:
        await client.aclose()


@router.get('/healthz')
def healthz():
    return {"status": "ok"}


@router.get('/readyz')
async def readyz(request: Request):
    if getattr(request.app.state, 'realtime', None) is None:
        logger.error('Readiness check failed: realtime hub not started')
        raise HTTPException(status_code=503, detail='Not ready')

    # Redis only matters when it carries cross-process fan-out
    if settings.REDIS_URL:
        try:
            if not await redis_ping(settings.REDIS_URL):
                logger.error('Redis health check failed')
                raise HTTPException(status_code=503, detail='Not ready')
        except HTTPException:
            raise
        except Exception:
            logger.exception('Redis readiness check failed')
            raise HTTPException(status_code=503, detail='Not ready')

    return {"status": "ready"}
