# FILE: nima/server.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.cors import CORSMiddleware

from nima.core import config
from nima.core.database import engine, init_models
from nima.core.errors import NimaError
from nima.api import auth, credits, items, looks, root
from nima.services import generation_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("nima")

app = FastAPI(title="Nima API")

app.include_router(root.router)
app.include_router(auth.router)
app.include_router(credits.router)
app.include_router(looks.router)
app.include_router(items.router)

config.MEDIA_DIR.mkdir(parents=True, exist_ok=True)
app.mount(config.MEDIA_URL_PREFIX, StaticFiles(directory=str(config.MEDIA_DIR)), name="media")

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NimaError)
async def nima_error_handler(request: Request, exc: NimaError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.on_event("startup")
async def startup():
    await init_models()
    await generation_service.recover_pending_tasks()
    logger.info("Nima API started")


@app.on_event("shutdown")
async def shutdown():
    await engine.dispose()
