# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the PortMail service.

This module provides the REST API of the service. It includes:

- The sweep trigger route called by the external scheduler
  (``/cron/send-mails``), protected by a shared bearer secret
- Job, ship and port template management routes, protected by the API
  token in the ``X-API-Token`` header and scoped to the user id forwarded
  by the upstream auth provider in ``X-User-Id``
- Dashboard counts, health check and Prometheus metrics

Example:
    Creating and running the API application::

        from portmail.core import PortMailService
        from portmail.api import create_app

        service = PortMailService(load_config())
        app = create_app(service, api_token="secret-token", cron_secret="cron-secret")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, AsyncContextManager, Callable, Literal

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST

from .core import PortMailService
from .errors import PortMailError
from .models import JobAction, JobCreate, PortAttachmentCreate, PortCreate, PortUpdate, ShipCreate, ShipUpdate

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
USER_ID_HEADER_NAME = "X-User-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

# command error code -> HTTP status
ERROR_STATUS = {
    "not_found": 404,
    "invalid_transition": 409,
    "invalid_request": 400,
}

StatusFilter = Literal["pending", "processing", "sent", "failed", "cancelled", "all"]


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or not secrets.compare_digest(api_token.encode(), expected.encode()):
        raise HTTPException(401, "Invalid or missing API token")


async def require_user(x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER_NAME)) -> str:
    """Return the caller's user id as forwarded by the auth provider."""
    if not x_user_id:
        raise HTTPException(401, "Unauthorized")
    return x_user_id


auth_dependency = Depends(require_token)


def _checked(result: dict[str, Any]) -> dict[str, Any]:
    """Turn a failed command result into the matching HTTP error."""
    if result.get("ok"):
        return result
    raise HTTPException(ERROR_STATUS.get(result.get("code"), 400), result.get("error") or "Request failed")


def cron_authorized(authorization: str | None, cron_secret: str | None, production: bool) -> bool:
    """Decide whether a sweep trigger request may run.

    Outside production every request is accepted. In production the
    ``Authorization`` header must be ``Bearer <cron_secret>``; with no
    secret configured nothing is accepted.
    """
    if not production:
        return True
    if not cron_secret or not authorization:
        return False
    return secrets.compare_digest(authorization.encode(), f"Bearer {cron_secret}".encode())


def create_app(
    svc: PortMailService,
    api_token: str | None = None,
    cron_secret: str | None = None,
    production: bool = True,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`portmail.core.PortMailService` that implements
        the business logic for each route.
    api_token:
        Optional secret protecting the management routes through the
        ``X-API-Token`` header.
    cron_secret:
        Shared secret the external scheduler sends as
        ``Authorization: Bearer <secret>`` on ``/cron/send-mails``.
        In production the route fails closed: without a configured secret
        every request gets 401. The Next.js route this service replaces
        skipped the check when no secret was set.
    production:
        When False the cron secret is not enforced.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    service: PortMailService | None = svc
    api = FastAPI(title="PortMail", lifespan=lifespan)
    api.state.api_token = api_token
    if production and not cron_secret:
        logger.warning("No cron secret configured: /cron/send-mails will reject every request")

    def get_service() -> PortMailService:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.exception_handler(PortMailError)
    async def service_error_handler(request: Request, exc: PortMailError):
        """Configuration and job store failures become a 500 with the message."""
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": str(exc), "code": exc.code})

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.api_route("/cron/send-mails", methods=["GET", "POST"])
    async def cron_send_mails(authorization: str | None = Header(default=None)):
        """Run one sweep on behalf of the external scheduler."""
        if not cron_authorized(authorization, cron_secret, production):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        report = await get_service().run_sweep(trigger="http")
        return report.to_response()

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(content=get_service().metrics.generate_latest(), media_type=CONTENT_TYPE_LATEST)

    router = APIRouter(dependencies=[auth_dependency])

    # Jobs ---------------------------------------------------------------------
    @router.get("/jobs")
    async def list_jobs(
        status: StatusFilter | None = None,
        limit: int = Query(default=50, ge=1, le=500),
        user_id: str = Depends(require_user),
    ):
        result = await get_service().handle_command(
            "listJobs", {"user_id": user_id, "status": status, "limit": limit}
        )
        return _checked(result)["jobs"]

    @router.post("/jobs", status_code=201)
    async def create_job(payload: JobCreate, user_id: str = Depends(require_user)):
        data = payload.model_dump(exclude_unset=True)
        result = await get_service().handle_command("addJob", {**data, "user_id": user_id})
        return _checked(result)["job"]

    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str, user_id: str = Depends(require_user)):
        result = await get_service().handle_command("getJob", {"id": job_id, "user_id": user_id})
        return _checked(result)["job"]

    @router.patch("/jobs/{job_id}")
    async def update_job(job_id: str, payload: JobAction, user_id: str = Depends(require_user)):
        cmd = "cancelJob" if payload.action == "cancel" else "retryJob"
        result = await get_service().handle_command(cmd, {"id": job_id, "user_id": user_id})
        return _checked(result)["job"]

    @router.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, user_id: str = Depends(require_user)):
        result = await get_service().handle_command("deleteJob", {"id": job_id, "user_id": user_id})
        _checked(result)
        return {"success": True}

    @router.get("/stats")
    async def stats(user_id: str = Depends(require_user)):
        result = _checked(await get_service().handle_command("stats", {"user_id": user_id}))
        return {"pending": result["pending"], "sentToday": result["sent_today"], "failed": result["failed"]}

    # Ships --------------------------------------------------------------------
    @router.get("/ships")
    async def list_ships():
        return _checked(await get_service().handle_command("listShips", {}))["ships"]

    @router.post("/ships", status_code=201)
    async def create_ship(payload: ShipCreate, x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER_NAME)):
        result = await get_service().handle_command("addShip", {**payload.model_dump(), "user_id": x_user_id})
        return _checked(result)["ship"]

    @router.get("/ships/{ship_id}")
    async def get_ship(ship_id: str):
        return _checked(await get_service().handle_command("getShip", {"id": ship_id}))["ship"]

    @router.put("/ships/{ship_id}")
    async def update_ship(ship_id: str, payload: ShipUpdate):
        data = payload.model_dump(exclude_unset=True)
        result = await get_service().handle_command("updateShip", {**data, "id": ship_id})
        return _checked(result)["ship"]

    @router.delete("/ships/{ship_id}")
    async def delete_ship(ship_id: str):
        _checked(await get_service().handle_command("deleteShip", {"id": ship_id}))
        return {"success": True}

    # Ports --------------------------------------------------------------------
    @router.get("/ports")
    async def list_ports():
        return _checked(await get_service().handle_command("listPorts", {}))["ports"]

    @router.post("/ports", status_code=201)
    async def create_port(payload: PortCreate, x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER_NAME)):
        result = await get_service().handle_command("addPort", {**payload.model_dump(), "user_id": x_user_id})
        return _checked(result)["port"]

    @router.get("/ports/{port_id}")
    async def get_port(port_id: str):
        return _checked(await get_service().handle_command("getPort", {"id": port_id}))["port"]

    @router.put("/ports/{port_id}")
    async def update_port(port_id: str, payload: PortUpdate):
        data = payload.model_dump(exclude_unset=True)
        result = await get_service().handle_command("updatePort", {**data, "id": port_id})
        return _checked(result)["port"]

    @router.delete("/ports/{port_id}")
    async def delete_port(port_id: str):
        _checked(await get_service().handle_command("deletePort", {"id": port_id}))
        return {"success": True}

    @router.post("/ports/{port_id}/attachments", status_code=201)
    async def add_port_attachment(port_id: str, payload: PortAttachmentCreate):
        result = await get_service().handle_command(
            "addPortAttachment", {**payload.model_dump(), "port_id": port_id}
        )
        return _checked(result)["attachment"]

    @router.delete("/ports/{port_id}/attachments/{attachment_id}")
    async def delete_port_attachment(port_id: str, attachment_id: str):
        result = await get_service().handle_command(
            "deletePortAttachment", {"port_id": port_id, "id": attachment_id}
        )
        _checked(result)
        return {"success": True}

    api.include_router(router)
    return api
