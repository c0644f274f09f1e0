import threading
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from solarview.app import SolarViewApp, inverter_to_dict
from solarview.errors import SolarViewError
from solarview.models import (ControlRequest, CostSettings, ExportRequest, InverterCreate, InverterUpdate, JobKind,
                              PowerLimitRequest, ReportRequest)
from solarview.timezone_utils import format_utc_iso, now_utc

log = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation": 400,
    "configuration": 400,
    "not_found": 404,
    "conflict": 409,
    "invalid_state": 409,
    "device_unreachable": 502,
}


class ImportPayload(BaseModel):
    samples: List[Dict[str, Any]]


def owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, supplied by the identity provider in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def _artifact_response(artifact) -> Response:
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


def create_api(solar_app: SolarViewApp) -> FastAPI:
    """
    Create a FastAPI app bound to the running SolarViewApp instance.
    Every route is scoped to the caller from the X-User-Id header.
    """
    app = FastAPI(title="SolarView API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request, call_next):
        log.debug(f"API request: {request.method} {request.url}")
        try:
            response = await call_next(request)
            log.info(f"API response: {request.method} {request.url.path} {response.status_code}")
            return response
        except Exception as e:
            log.error(f"API request failed: {e}", exc_info=True)
            raise

    @app.exception_handler(SolarViewError)
    async def solarview_error(request: Request, exc: SolarViewError):
        status = ERROR_STATUS.get(exc.kind, 500)
        if status >= 500:
            log.warning(f"{request.method} {request.url.path} -> {exc.kind}: {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": "validation", "message": problems})

    @app.get("/api/health")
    def api_health() -> Dict[str, Any]:
        """Health check endpoint to test if API server is working."""
        return {"status": "ok", "message": "API server is running", "timestamp": format_utc_iso(now_utc())}

    # --- inverters ---

    @app.get("/api/inverters")
    def api_list_inverters(status: Optional[str] = None, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        inverters = solar_app.list_inverters(owner, status)
        return {"inverters": [inverter_to_dict(i) for i in inverters]}

    @app.post("/api/inverters", status_code=201)
    def api_create_inverter(body: InverterCreate, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return inverter_to_dict(solar_app.create_inverter(owner, body))

    @app.get("/api/inverters/{inverter_id}")
    def api_get_inverter(inverter_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return inverter_to_dict(solar_app.get_inverter(owner, inverter_id))

    @app.patch("/api/inverters/{inverter_id}")
    def api_update_inverter(inverter_id: str, body: InverterUpdate, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return inverter_to_dict(solar_app.update_inverter(owner, inverter_id, body))

    @app.delete("/api/inverters/{inverter_id}", status_code=204)
    def api_delete_inverter(inverter_id: str, owner: str = Depends(owner_id)) -> Response:
        solar_app.delete_inverter(owner, inverter_id)
        return Response(status_code=204)

    @app.get("/api/inverters/{inverter_id}/live")
    async def api_live(inverter_id: str, refresh: bool = False, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return await solar_app.live(owner, inverter_id, refresh=refresh)

    @app.post("/api/inverters/{inverter_id}/control")
    async def api_control(inverter_id: str, body: ControlRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        result = await solar_app.send_control(owner, inverter_id, body.action)
        return {"status": "ok", "action": body.action, "gateway": result}

    @app.post("/api/inverters/{inverter_id}/limit")
    async def api_limit(inverter_id: str, body: PowerLimitRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        result = await solar_app.set_power_limit(owner, inverter_id, body.kind, body.persistent, body.value)
        return {"status": "ok", "limit": body.model_dump(), "gateway": result}

    @app.post("/api/inverters/{inverter_id}/test")
    async def api_test_connection(inverter_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return await solar_app.test_connection(owner, inverter_id)

    @app.post("/api/inverters/{inverter_id}/samples/import")
    async def api_import(inverter_id: str, body: ImportPayload, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        result = await solar_app.import_samples(owner, inverter_id, body.samples)
        return {"accepted": result.accepted, "rejected": result.rejected}

    # --- aggregates & settings ---

    @app.get("/api/aggregate")
    async def api_aggregate(start: datetime, end: datetime, granularity: str = "day",
                            inverter_id: Optional[str] = None, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return await solar_app.aggregate(owner, start, end, granularity, inverter_id)

    @app.get("/api/dashboard")
    async def api_dashboard(owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return await solar_app.dashboard(owner)

    @app.get("/api/savings")
    async def api_savings(months: int = 12, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return await solar_app.savings(owner, months)

    @app.get("/api/settings/cost")
    def api_get_cost_settings(owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return solar_app.get_cost_settings(owner).model_dump()

    @app.put("/api/settings/cost")
    def api_put_cost_settings(body: CostSettings, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return solar_app.set_cost_settings(owner, body).model_dump()

    # --- export & report jobs ---
    # async so job lookups run on the loop that owns the jobs

    @app.post("/api/exports", status_code=202)
    async def api_start_export(body: ExportRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return (await solar_app.start_export(owner, body)).to_dict()

    @app.get("/api/exports/{job_id}")
    async def api_export_status(job_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return solar_app.job_status(owner, job_id, JobKind.EXPORT).to_dict()

    @app.post("/api/exports/{job_id}/cancel")
    async def api_cancel_export(job_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return (await solar_app.cancel_job(owner, job_id, JobKind.EXPORT)).to_dict()

    @app.get("/api/exports/{job_id}/artifact")
    async def api_export_artifact(job_id: str, owner: str = Depends(owner_id)) -> Response:
        return _artifact_response(solar_app.job_artifact(owner, job_id, JobKind.EXPORT))

    @app.get("/api/reports")
    async def api_list_reports(owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return {"reports": [j.to_dict() for j in solar_app.list_jobs(owner, JobKind.REPORT)]}

    @app.post("/api/reports", status_code=202)
    async def api_start_report(body: ReportRequest, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return (await solar_app.start_report(owner, body)).to_dict()

    @app.get("/api/reports/{job_id}")
    async def api_report_status(job_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return solar_app.job_status(owner, job_id, JobKind.REPORT).to_dict()

    @app.post("/api/reports/{job_id}/cancel")
    async def api_cancel_report(job_id: str, owner: str = Depends(owner_id)) -> Dict[str, Any]:
        return (await solar_app.cancel_job(owner, job_id, JobKind.REPORT)).to_dict()

    @app.get("/api/reports/{job_id}/artifact")
    async def api_report_artifact(job_id: str, owner: str = Depends(owner_id)) -> Response:
        return _artifact_response(solar_app.job_artifact(owner, job_id, JobKind.REPORT))

    @app.on_event("shutdown")
    async def cancel_running_jobs():
        await solar_app.jobs.shutdown()

    return app


def start_api_in_background(fastapi_app: FastAPI, host: str, port: int) -> None:
    """Start a uvicorn server in a background daemon thread."""
    try:
        config = uvicorn.Config(
            fastapi_app,
            host=host,
            port=port,
            log_level="info",
            access_log=True,
            use_colors=False,
            log_config=None  # keep the application's logging setup
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()
        log.info(f"API server thread started on {host}:{port}")
    except Exception as e:
        log.error(f"Error starting API server: {e}", exc_info=True)
