"""FastAPI application for the human-auth relay.

Beginner terms used in this file:
- Bearer key: shared secret the bridge sends as `Authorization: Bearer <key>`.
- Open token / poll token: per-request secrets passed as `?token=`; see relay_store.
- Lifespan: code FastAPI runs on startup/shutdown (here: the expiry sweeper thread).
- app.state: shared runtime objects (settings, store) reused by route handlers.
"""

from __future__ import annotations

import hmac
import logging
import threading
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import HTMLResponse

from .app.errors import InvalidArtifact, InvalidOrExpiredToken, RequestNotFound
from .app.models import (
    CreateHumanAuthRequest,
    CreateHumanAuthResponse,
    HumanAuthContext,
    HumanAuthStatusResponse,
    HumanAuthSummary,
    RelayRecord,
    ResolveHumanAuthRequest,
)
from .app.relay_store import RelayStore
from .app.ui import render_approval_page, render_error_page
from .config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

API_PREFIX = "/v1/human-auth"


def create_app(
    settings: Settings | None = None,
    *,
    store: RelayStore | None = None,
) -> FastAPI:
    """Application factory. Tests pass their own settings and store."""
    settings = settings or get_settings()
    store = store or RelayStore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = threading.Event()
        sweeper = None
        if settings.relay_sweep_interval_s > 0:
            sweeper = threading.Thread(
                target=_sweep_forever,
                args=(store, stop, settings.relay_sweep_interval_s),
                name="relay-sweeper",
                daemon=True,
            )
            sweeper.start()
        try:
            yield
        finally:
            stop.set()
            if sweeper is not None:
                sweeper.join(timeout=5)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.store = store

    def require_bearer(authorization: str | None = Header(default=None)) -> None:
        expected = settings.relay_api_key
        if not expected:
            return
        scheme, _, supplied = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(
            supplied.strip().encode("utf-8"), expected.encode("utf-8")
        ):
            raise HTTPException(status_code=401, detail="Missing or invalid bearer key")

    @app.get("/health")
    @app.get("/healthz")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post(
        f"{API_PREFIX}/requests",
        response_model=CreateHumanAuthResponse,
        dependencies=[Depends(require_bearer)],
    )
    def create_request(
        payload: CreateHumanAuthRequest, request: Request
    ) -> CreateHumanAuthResponse:
        issued = store.create(payload)
        base_url = (
            payload.public_base_url
            or settings.relay_public_base_url
            or str(request.base_url)
        ).rstrip("/")
        open_url = f"{base_url}/human-auth/{issued.record.request_id}?token={issued.open_token}"
        return CreateHumanAuthResponse(
            request_id=issued.record.request_id,
            open_url=open_url,
            poll_token=issued.poll_token,
            expires_at=issued.record.expires_at,
        )

    @app.get(
        f"{API_PREFIX}/requests",
        response_model=list[HumanAuthSummary],
        dependencies=[Depends(require_bearer)],
    )
    def list_requests(status: str | None = Query(default=None)) -> list[HumanAuthSummary]:
        return [_summary(record) for record in store.list_records(status=status)]

    @app.get(f"{API_PREFIX}/requests/{{request_id}}", response_model=HumanAuthContext)
    def get_request(request_id: str, token: str = Query(default="")) -> HumanAuthContext:
        try:
            record = store.get_for_open_token(request_id, token)
        except RequestNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidOrExpiredToken as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return _context(record)

    @app.get("/human-auth/{request_id}", response_class=HTMLResponse)
    def approval_page(request_id: str, token: str = Query(default="")) -> HTMLResponse:
        try:
            record = store.get_for_open_token(request_id, token)
        except RequestNotFound:
            return HTMLResponse(
                render_error_page("Request not found", "This link does not match any request."),
                status_code=404,
            )
        except InvalidOrExpiredToken:
            return HTMLResponse(
                render_error_page("Link not valid", "This approval link is invalid."),
                status_code=403,
            )
        return HTMLResponse(render_approval_page(_context(record), token))

    @app.post(
        f"{API_PREFIX}/requests/{{request_id}}/resolve",
        response_model=HumanAuthStatusResponse,
    )
    def resolve_request(
        request_id: str,
        payload: ResolveHumanAuthRequest,
        token: str = Query(default=""),
    ) -> HumanAuthStatusResponse:
        try:
            record = store.resolve(request_id, token, payload)
        except RequestNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidOrExpiredToken as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except InvalidArtifact as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _status(record)

    @app.post(
        f"{API_PREFIX}/requests/{{request_id}}/override",
        response_model=HumanAuthStatusResponse,
        dependencies=[Depends(require_bearer)],
    )
    def override_request(
        request_id: str, payload: ResolveHumanAuthRequest
    ) -> HumanAuthStatusResponse:
        try:
            record = store.override(request_id, payload)
        except RequestNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidOrExpiredToken as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except InvalidArtifact as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        logger.info("relay_override request_id=%s status=%s", request_id, record.status)
        return _status(record)

    @app.get(
        f"{API_PREFIX}/requests/{{request_id}}/status",
        response_model=HumanAuthStatusResponse,
        dependencies=[Depends(require_bearer)],
    )
    def poll_request(request_id: str, token: str = Query(default="")) -> HumanAuthStatusResponse:
        try:
            record = store.poll(request_id, token)
        except RequestNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidOrExpiredToken as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return _status(record)

    @app.get(
        f"{API_PREFIX}/requests/{{request_id}}/artifact",
        dependencies=[Depends(require_bearer)],
    )
    def download_artifact(request_id: str, token: str = Query(default="")) -> Response:
        try:
            artifact = store.read_artifact(request_id, token)
        except RequestNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except InvalidOrExpiredToken as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        if artifact is None:
            raise HTTPException(status_code=404, detail="No image artifact for this request")
        data, mime_type = artifact
        return Response(content=data, media_type=mime_type)

    return app


def _sweep_forever(store: RelayStore, stop: threading.Event, interval_s: float) -> None:
    while not stop.wait(interval_s):
        try:
            store.sweep_expired()
        except Exception as exc:  # noqa: BLE001
            logger.warning("relay_sweep event=error error=%s", exc)


def _context(record: RelayRecord) -> HumanAuthContext:
    return HumanAuthContext.model_validate(record.model_dump(exclude={"artifact"}))


def _status(record: RelayRecord) -> HumanAuthStatusResponse:
    return HumanAuthStatusResponse(
        request_id=record.request_id,
        status=record.status,
        expires_at=record.expires_at,
        decided_at=record.decided_at,
        note=record.note,
        artifact=record.artifact,
    )


def _summary(record: RelayRecord) -> HumanAuthSummary:
    return HumanAuthSummary(
        request_id=record.request_id,
        capability=record.capability,
        status=record.status,
        session_id=record.session_id,
        step=record.step,
        message=record.note or record.instruction,
        created_at=record.created_at,
        expires_at=record.expires_at,
        decided_at=record.decided_at,
        has_artifact=record.artifact is not None,
        screenshot_path=record.screenshot_path,
    )


# Module-level app for `uvicorn pocket_agent.main:app`.
app = create_app()
