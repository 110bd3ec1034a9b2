import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from packbattle.authentication.basic_authentication import BasicAuthentication
from packbattle.db import Database, get_database
from packbattle.domain.errors import BattleError
from packbattle.models.basic_authentication_models import CredentialModel
from packbattle.models.dc_models import AddBotsModel, CreateBattleModel
from packbattle.models.schema_models import (
    BattleSchema,
    PullRateReportSchema,
    ReadyStateSchema,
)
from packbattle.redis_notifier import BattleNotifier
from packbattle.services import battle_db, settlement

battle_router = APIRouter()
basic_auth = BasicAuthentication()


def get_notifier(request: Request) -> BattleNotifier | None:
    return getattr(request.app.state, "notifier", None)


async def _call(action: str, coroutine):
    """Await a service call and translate its errors to HTTP responses.

    Precondition failures keep their message; anything else is logged and
    answered with an opaque 500.
    """
    try:
        return await coroutine
    except BattleError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail) from e
    except Exception as e:
        logging.exception(f"{action} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}",
        ) from e


class BattleAPI:
    @staticmethod
    @battle_router.get("/battles", response_model=List[BattleSchema])
    async def list_battles(
        limit: int = Query(default=50, ge=1, le=200),
        database: Database = Depends(get_database),
    ):
        return await _call("fetch battles", battle_db.list_battles(database, limit))

    @staticmethod
    @battle_router.post("/battles", response_model=BattleSchema)
    async def create_battle(
        battle: CreateBattleModel,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
    ):
        return await _call(
            "create battle", battle_db.create_battle(database, user_data.username, battle)
        )

    @staticmethod
    @battle_router.get("/battles/{battle_id}", response_model=BattleSchema)
    async def get_battle(battle_id: UUID, database: Database = Depends(get_database)):
        return await _call("fetch battle", battle_db.read_battle(database, battle_id))

    @staticmethod
    @battle_router.post("/battles/{battle_id}/join", response_model=BattleSchema)
    async def join_battle(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        return await _call(
            "join battle",
            battle_db.join_battle(database, battle_id, user_data.username, notifier),
        )

    @staticmethod
    @battle_router.post("/battles/{battle_id}/ready", response_model=ReadyStateSchema)
    async def mark_ready(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        return await _call(
            "mark as ready",
            battle_db.mark_ready(database, battle_id, user_data.username, notifier),
        )

    @staticmethod
    @battle_router.delete("/battles/{battle_id}/ready", response_model=ReadyStateSchema)
    async def unmark_ready(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        return await _call(
            "unmark ready",
            battle_db.unmark_ready(database, battle_id, user_data.username, notifier),
        )

    @staticmethod
    @battle_router.delete("/battles/{battle_id}")
    async def delete_battle(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
    ):
        await _call("delete battle", battle_db.delete_battle(database, battle_id, user_data.username))
        return {"success": True, "message": "Battle deleted successfully"}

    @staticmethod
    @battle_router.post("/battles/{battle_id}/bots", response_model=BattleSchema)
    async def add_bots(
        battle_id: UUID,
        request: AddBotsModel,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        return await _call(
            "add bots",
            battle_db.add_bots(database, battle_id, user_data.username, request.count, notifier),
        )

    @staticmethod
    @battle_router.post("/battles/{battle_id}/start", response_model=BattleSchema)
    async def start_battle(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        """Resolve the battle and return it settled, with every pull and the winner"""
        return await _call(
            "start battle",
            settlement.start_battle(database, battle_id, user_data.username, notifier=notifier),
        )

    @staticmethod
    @battle_router.get("/battles/{battle_id}/stream")
    async def stream_battle(
        battle_id: UUID,
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
        notifier: BattleNotifier | None = Depends(get_notifier),
    ):
        if notifier is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Live updates are not configured",
            )
        # fail fast with 404 before opening the stream
        await _call("fetch battle", battle_db.read_battle(database, battle_id))

        return StreamingResponse(
            notifier.event_generator(battle_id, lambda: battle_db.read_battle(database, battle_id)),
            media_type="text/event-stream; charset=utf-8",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )


class BoxAPI:
    @staticmethod
    @battle_router.get("/boxes/{box_id}/simulate", response_model=PullRateReportSchema)
    async def simulate_box(
        box_id: UUID,
        iterations: int = Query(default=10000, ge=1, le=1_000_000),
        user_data: CredentialModel = Depends(basic_auth.check_user_data),
        database: Database = Depends(get_database),
    ):
        return await _call(
            "simulate pulls", battle_db.simulate_box(database, box_id, iterations)
        )
