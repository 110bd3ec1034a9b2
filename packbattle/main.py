from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

from packbattle.db import Database
from packbattle.load_secrets import (
    auto_start_after_minutes,
    auto_start_interval_seconds,
    database_url,
    log_level,
    redis_url,
)
from packbattle.redis_notifier import BattleNotifier
from packbattle.routers import battle
from packbattle.services.settlement import auto_start_battles

logging.basicConfig(level=log_level)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def create_app(
    db_url: str | None = None,
    redis: str | None = redis_url,
    enable_scheduler: bool = True,
) -> FastAPI:
    """Build the application. The datastore client, the notifier and the
    scheduler live for the lifespan of the app and are closed on shutdown.

    Args:
        db_url (str | None): Datastore URL, defaults to the configured one
        redis (str | None): Redis URL; live updates are disabled without it
        enable_scheduler (bool): Run the auto-start sweep in the background
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(db_url or database_url()).open()
        await database.create_tables()
        app.state.database = database

        notifier = BattleNotifier.from_url(redis) if redis else None
        app.state.notifier = notifier

        scheduler = None
        if enable_scheduler:
            scheduler = AsyncIOScheduler()
            # Full battles nobody started are resolved after a grace period
            scheduler.add_job(
                auto_start_battles,
                "interval",
                seconds=auto_start_interval_seconds,
                args=[database, auto_start_after_minutes],
                kwargs={"notifier": notifier},
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown()
            if notifier is not None:
                await notifier.close()
            await database.close()
            logging.info("Stop Server")

    app = FastAPI(lifespan=lifespan)
    app.include_router(battle.battle_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("packbattle.main:app", host="0.0.0.0", port=8080)
