import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cbt.connections import mongo_lifespan, redis_lifespan
from cbt.api.user import router as user_router
from cbt.api.exam import router as exam_router
from cbt.api.session import router as session_router
from cbt.api.realtime import router as realtime_router
from cbt.utils.base import ServiceError
from cbt.utils.config import settings


logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def combined_lifespan(app: FastAPI):
    async with AsyncExitStack() as stack:
        await stack.enter_async_context(mongo_lifespan(app))
        await stack.enter_async_context(redis_lifespan(app))
        logger.info("%s started (%s)", settings.app_name, settings.environment)

        yield


app = FastAPI(title="School CBT", version="0.1.0", lifespan=combined_lifespan)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "record": exc.record})


app.include_router(user_router, prefix="/api/users")
app.include_router(exam_router, prefix="/api/exams")
app.include_router(session_router, prefix="/api/sessions")
app.include_router(realtime_router, prefix="/api/realtime")
