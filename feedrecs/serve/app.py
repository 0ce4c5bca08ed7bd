from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..errors import ConfigError
from ..models import EventKind, InteractionEvent, as_utc, utcnow
from ..pipeline import RecommendationService, build_service
from ..scheduler import build_scheduler
from ..settings import configure_logging, load_settings

log = logging.getLogger(__name__)

LIMIT_DEFAULT = int(os.getenv("FEED_LIMIT_DEFAULT", "20"))
LIMIT_MAX = int(os.getenv("FEED_LIMIT_MAX", "100"))

FeedMode = Literal["personalized", "trending", "diverse", "newest"]


class FeedItem(BaseModel):
    id: str
    source: str
    title: str
    kind: str
    categories: List[str] = []
    views: int = 0
    likes: int = 0
    published_at: Optional[str] = None
    score: float
    similarity: float = 0.0


class FeedResponse(BaseModel):
    items: List[FeedItem]
    status: Literal["ok", "no_content"]
    tier: Optional[str] = None
    page: int
    limit: int
    cached: bool = False
    generated_at: str


class InteractionIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    content_id: str = Field(..., min_length=1)
    kind: EventKind
    timestamp: Optional[datetime] = None
    duration: Optional[float] = Field(None, ge=0)


def create_app(service: Optional[RecommendationService] = None, run_scheduler: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service
        if svc is None:
            configure_logging()
            try:
                settings = load_settings(os.getenv("FEEDRECS_CONFIG")).validate()
            except ConfigError as e:
                log.error(f"Invalid configuration: {e}")
                raise
            svc = build_service(settings)
        app.state.service = svc
        await svc.force_rebuild_index()
        sched = build_scheduler(svc, svc.settings)
        if run_scheduler:
            sched.start()
        app.state.scheduler = sched
        try:
            yield
        finally:
            await sched.stop()
            await svc.close()

    app = FastAPI(title="feedrecs", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _svc(request: Request) -> RecommendationService:
        return request.app.state.service

    @app.get("/health")
    def health(request: Request):
        idx = _svc(request).index.stats()
        return {"status": "ok", "index_built": idx["built"], "index_size": idx["size"], "generation": idx["generation"]}

    @app.get("/stats")
    async def stats(request: Request):
        out = await _svc(request).stats()
        out["jobs"] = request.app.state.scheduler.stats()
        return out

    @app.get("/feed", response_model=FeedResponse)
    async def feed(
        request: Request,
        user_id: str = Query(..., min_length=1),
        page: int = Query(1, ge=1),
        limit: int = Query(LIMIT_DEFAULT, ge=1, le=LIMIT_MAX),
        mode: FeedMode = "personalized",
        salt: Optional[str] = Query(None, max_length=64),
    ):
        return await _svc(request).get_feed(user_id, page=page, limit=limit, mode=mode, salt=salt)

    @app.post("/interactions", status_code=202)
    async def interactions(request: Request, body: InteractionIn):
        svc = _svc(request)
        known = await svc.corpus.get_many([body.content_id])
        if body.content_id not in known:
            raise HTTPException(status_code=404, detail=f"content {body.content_id} not found")
        event = InteractionEvent(
            user_id=body.user_id,
            content_id=body.content_id,
            kind=body.kind,
            timestamp=as_utc(body.timestamp) if body.timestamp else utcnow(),
            duration=body.duration,
        )
        await svc.record_interaction(event)
        return {"accepted": True}

    @app.post("/users/{user_id}/invalidate")
    async def invalidate(request: Request, user_id: str):
        removed = await _svc(request).invalidate(user_id)
        return {"user_id": user_id, "invalidated": removed}

    @app.post("/admin/rebuild-index")
    async def rebuild_index(request: Request, retrain: bool = False):
        return await _svc(request).force_rebuild_index(retrain=retrain)

    return app


app = create_app()


def cli() -> None:
    import uvicorn

    uvicorn.run(
        "feedrecs.serve.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=os.getenv("LOGLEVEL", "info").lower(),
    )
