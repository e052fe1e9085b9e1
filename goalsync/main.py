"""Main FastAPI application."""

import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import AuthSession
from .config import Settings, settings
from .domain.models import Collection, ObjectiveStatus, RoutineKind
from .errors import AuthenticationError, GatewayError
from .remote.client import RemoteStoreClient
from .remote.database import SQLiteGateway
from .remote.gateway import PersistenceGateway
from .sync.events import Notice
from .sync.store import GoalStateStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class ObjectiveCreate(BaseModel):
    name: str
    end_date: datetime
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    activate: bool = True


class ObjectivePatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[ObjectiveStatus] = None


class ReorderRequest(BaseModel):
    ordered_ids: list[str]


class AdjustRequest(BaseModel):
    delta: float


class CountAdjustRequest(BaseModel):
    delta: int


class SaveSessionRequest(BaseModel):
    label: str


def create_gateway(config: Settings, user_id: str) -> PersistenceGateway:
    """Build the gateway selected by configuration."""
    if config.store_backend == "websocket":
        return RemoteStoreClient(config.store_url, config.store_token)
    if config.store_backend != "sqlite":
        logger.warning(f"Unknown store backend '{config.store_backend}', using sqlite")
    return SQLiteGateway(config.sqlite_path)


def create_app(config: Settings = settings) -> FastAPI:
    """Build the application around one AuthSession."""
    auth = AuthSession(
        lambda user_id: create_gateway(config, user_id),
        quiet_period=config.write_quiet_period,
        clear_deadline_on_complete=config.clear_deadline_on_complete,
    )
    notices: deque[Notice] = deque(maxlen=100)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Flush pending writes before the process goes away
        await auth.sign_out()

    app = FastAPI(
        title="goalsync",
        description="Keeps a user's active objective in sync with the remote store",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.auth = auth

    @app.exception_handler(ValueError)
    async def invalid_intent(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    def get_store(x_user_id: str = Header(..., description="Signed-in user id")) -> GoalStateStore:
        store = auth.store_for(x_user_id)
        if not store:
            raise HTTPException(status_code=401, detail="Not signed in")
        return store

    def require_objective(store: GoalStateStore, objective_id: str):
        if not store.objective(objective_id):
            raise HTTPException(status_code=404, detail=f"Objective {objective_id} not found")

    @app.get("/status")
    async def status():
        """Server status endpoint."""
        return {
            "status": "running",
            "version": "1.0.0",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": config.store_backend,
            "signed_in": auth.user_id is not None,
        }

    @app.post("/api/session")
    async def sign_in(x_user_id: str = Header(..., description="Signed-in user id")):
        """Sign in and load the user's objectives."""
        logger.info(f"Sign-in request for user: {x_user_id}")
        already_signed_in = auth.store_for(x_user_id) is not None
        try:
            store = await auth.sign_in(x_user_id)
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except GatewayError as e:
            logger.error(f"Could not load objectives for {x_user_id}: {e}")
            raise HTTPException(status_code=503, detail="Remote store unavailable")

        if not already_signed_in:
            store.notices.subscribe(notices.append)
        return store.snapshot().model_dump(mode="json")

    @app.delete("/api/session")
    async def sign_out(store: GoalStateStore = Depends(get_store)):
        """Flush pending writes and sign out."""
        await auth.sign_out()
        return {"status": "success", "message": f"Signed out {store.user_id}"}

    @app.get("/api/notices")
    async def drain_notices(store: GoalStateStore = Depends(get_store)):
        """Failure notices since the last call."""
        drained = [asdict(notice) for notice in notices]
        notices.clear()
        return {"notices": drained}

    @app.get("/api/objectives")
    async def list_objectives(store: GoalStateStore = Depends(get_store)):
        snapshot = store.snapshot()
        return {
            "active_objective_id": snapshot.active_objective_id,
            "objectives": [objective.model_dump(mode="json") for objective in store.objectives()],
        }

    @app.get("/api/objectives/active")
    async def active_objective(store: GoalStateStore = Depends(get_store)):
        tree = store.active_objective()
        if not tree:
            raise HTTPException(status_code=404, detail="No active objective")
        return tree.model_dump(mode="json")

    @app.post("/api/objectives", status_code=201)
    async def create_objective(body: ObjectiveCreate, store: GoalStateStore = Depends(get_store)):
        objective_id = store.create_objective(
            body.name,
            body.end_date,
            description=body.description,
            start_date=body.start_date,
            activate=body.activate,
        )
        return {"id": objective_id}

    @app.get("/api/objectives/{objective_id}")
    async def get_objective(objective_id: str, store: GoalStateStore = Depends(get_store)):
        require_objective(store, objective_id)
        return store.objective(objective_id).model_dump(mode="json")

    @app.patch("/api/objectives/{objective_id}", status_code=202)
    async def patch_objective(
        objective_id: str, body: ObjectivePatch, store: GoalStateStore = Depends(get_store)
    ):
        require_objective(store, objective_id)
        fields = body.model_dump(exclude_unset=True)
        status = fields.pop("status", None)
        if fields:
            store.update_objective(objective_id, fields)
        if status:
            store.set_objective_status(objective_id, status)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/activate", status_code=202)
    async def activate_objective(objective_id: str, store: GoalStateStore = Depends(get_store)):
        require_objective(store, objective_id)
        store.set_active_objective(objective_id)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/tasks/reorder", status_code=202)
    async def reorder_tasks(
        objective_id: str, body: ReorderRequest, store: GoalStateStore = Depends(get_store)
    ):
        require_objective(store, objective_id)
        store.reorder_items(objective_id, Collection.TASKS, body.ordered_ids)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/avoid/{item_id}/adjust", status_code=202)
    async def adjust_counter(
        objective_id: str,
        item_id: str,
        body: CountAdjustRequest,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        store.adjust_counter(objective_id, item_id, body.delta)
        status = store.counter_status(objective_id, item_id)
        return {"status": "accepted", "band": status.value if status else None}

    @app.put("/api/objectives/{objective_id}/routines/{kind}", status_code=202)
    async def put_routine(
        objective_id: str,
        kind: RoutineKind,
        body: dict,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        store.update_routine_settings(objective_id, kind, body)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/routines/{kind}/adjust", status_code=202)
    async def adjust_intake(
        objective_id: str,
        kind: RoutineKind,
        body: AdjustRequest,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        store.adjust_intake(objective_id, kind, body.delta)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/progress", status_code=202)
    async def append_progress(
        objective_id: str, body: dict, store: GoalStateStore = Depends(get_store)
    ):
        require_objective(store, objective_id)
        store.append_progress_entry(objective_id, body)
        return {"status": "accepted"}

    @app.post("/api/objectives/{objective_id}/{collection}", status_code=201)
    async def add_item(
        objective_id: str,
        collection: Collection,
        body: dict,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        item_id = store.add_item(objective_id, collection, body)
        return {"id": item_id}

    @app.patch("/api/objectives/{objective_id}/{collection}/{item_id}", status_code=202)
    async def update_item(
        objective_id: str,
        collection: Collection,
        item_id: str,
        body: dict,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        store.update_item(objective_id, collection, item_id, body)
        return {"status": "accepted"}

    @app.delete("/api/objectives/{objective_id}/{collection}/{item_id}", status_code=202)
    async def remove_item(
        objective_id: str,
        collection: Collection,
        item_id: str,
        store: GoalStateStore = Depends(get_store),
    ):
        require_objective(store, objective_id)
        store.remove_item(objective_id, collection, item_id)
        return {"status": "accepted"}

    @app.get("/api/timer")
    async def timer_state(store: GoalStateStore = Depends(get_store)):
        return asdict(store.timer.state())

    @app.post("/api/timer/save", status_code=201)
    async def save_timer(body: SaveSessionRequest, store: GoalStateStore = Depends(get_store)):
        session_id = store.save_timer_session(body.label)
        return {"id": session_id}

    @app.post("/api/timer/{action}")
    async def control_timer(action: str, store: GoalStateStore = Depends(get_store)):
        controls = {"start": store.timer.start, "pause": store.timer.pause, "reset": store.timer.reset}
        if action not in controls:
            raise HTTPException(status_code=404, detail=f"Unknown timer action: {action}")
        controls[action]()
        return asdict(store.timer.state())

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )
