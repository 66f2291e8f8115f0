import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from .config import settings
from .db import Base, engine
from .exceptions import (
    ToolCreditsException, http_exception_handler, request_validation_handler,
    tool_credits_exception_handler, unhandled_exception_handler,
)
from .middleware import RequestIDMiddleware
from .routers import auth, credits, jobs, stripe, observability

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

Base.metadata.create_all(bind=engine)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ToolCreditsException, tool_credits_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(auth.router, prefix="/auth", tags=["auth"])
app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(stripe.router, prefix="/stripe", tags=["stripe"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# Observability endpoints
app.include_router(observability.router, prefix="/ops", tags=["observability"])
