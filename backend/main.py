import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Imposter backend starting up...")
    yield
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Imposter",
    version="0.1.0",
    description="Chat-room word game: find the imposter who doesn't know the secret word",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


from routers.game_router import router as game_router
from routers.ws_router import router as ws_router
from services.runtime import get_runtime

app.include_router(game_router, prefix="/api")
app.include_router(ws_router)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": "imposter",
        "version": "0.1.0",
        "rooms": len(get_runtime().registry.list_rooms()),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
