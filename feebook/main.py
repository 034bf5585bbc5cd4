import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from feebook import config
from feebook.database import Base, engine
from feebook.errors import FeeBookError
from feebook.routers import consumer, moderator, payments, provider
from feebook.schemas import fail

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FeeBook")

app.include_router(payments.router)
app.include_router(provider.router)
app.include_router(consumer.router)
app.include_router(moderator.router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(FeeBookError)
async def feebook_error_handler(request: Request, exc: FeeBookError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s %s", request.method, request.url.path, exc.code, exc.message, exc.context)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=fail(exc.message, exc.code))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(str(exc.detail), "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=fail("; ".join(problems) or "Invalid request", "VALIDATION_ERROR"),
    )
