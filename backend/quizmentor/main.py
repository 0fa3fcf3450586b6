import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .db import Base, engine, SessionLocal
from .cleanup import purge_inactive_auth_sessions
from .settings import settings
from .routers import auth, health, prelims

logging.basicConfig(
	level=settings.log_level.upper(),
	format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_SECONDS = 15 * 60


def _purge_auth_sessions() -> None:
	db = SessionLocal()
	try:
		removed = purge_inactive_auth_sessions(db)
		if removed:
			logger.info("Purged %d inactive auth sessions", removed)
	finally:
		db.close()


async def _housekeeping_loop():
	while True:
		await asyncio.sleep(HOUSEKEEPING_INTERVAL_SECONDS)
		try:
			await prelims.purge_idle_sessions()
			_purge_auth_sessions()
		except Exception:
			logger.exception("Housekeeping pass failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
	Base.metadata.create_all(bind=engine)
	try:
		_purge_auth_sessions()
	except Exception:
		logger.exception("Startup auth session purge failed")
	task = asyncio.create_task(_housekeeping_loop())
	yield
	task.cancel()
	await prelims.close_all_sessions()


app = FastAPI(title="Prelims Level Quiz API", lifespan=lifespan)
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(prelims.router)


if __name__ == "__main__":
	import uvicorn

	uvicorn.run("quizmentor.main:app", host="0.0.0.0", port=8000)
