import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from otlist.database import close_db, init_db
from otlist.routers import activity, cases, session, stream
from otlist.services.sessions import sessions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting OT list register...")
    await init_db()
    logger.info("Database initialized")
    yield
    await sessions.shutdown()
    await close_db()
    logger.info("OT list register shut down")


app = FastAPI(
    title="OT List Register",
    description="Surgical case scheduling register with cancellation, deferral and rebook tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(session.router)
app.include_router(cases.router)
app.include_router(activity.router)
app.include_router(stream.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
