"""FastAPI server for Sightline."""
from __future__ import annotations

import hmac
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sightline.config import get_config
from sightline.errors import SightlineError
from sightline.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

app = FastAPI(title="Sightline")


@app.on_event("startup")
def _startup() -> None:
    if getattr(app.state, "orchestrator", None) is not None:
        return
    config = get_config()
    app.state.config = config
    app.state.orchestrator = Orchestrator(config)


@app.exception_handler(SightlineError)
async def _sightline_error(request: Request, exc: SightlineError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def _user(request: Request) -> str | None:
    return request.headers.get("x-user-id") or None


@app.get("/health")
def health():
    return {"status": "healthy", "service": "sightline"}


@app.post("/api/jobs")
def submit_job_api(payload: dict, request: Request):
    return request.app.state.orchestrator.submit_job(payload, _user(request))


@app.post("/api/group-jobs")
def submit_group_job_api(payload: dict, request: Request):
    return request.app.state.orchestrator.submit_group_job(payload, _user(request))


@app.get("/api/jobs/{job_id}")
def job_detail_api(job_id: str, request: Request):
    return request.app.state.orchestrator.status(job_id, _user(request))


@app.get("/api/jobs/{job_id}/events")
def job_events_api(job_id: str, request: Request):
    return {"events": request.app.state.orchestrator.job_events(job_id, _user(request))}


@app.post("/api/jobs/{job_id}/cancel")
def cancel_job_api(job_id: str, request: Request):
    job = request.app.state.orchestrator.cancel(job_id, _user(request))
    return {"ok": True, "job": job.to_dict()}


@app.post("/api/webhooks/event-bus")
def event_bus_webhook(payload: dict, request: Request):
    orchestrator = request.app.state.orchestrator
    secret = str(orchestrator.config.dispatch.get("webhook_secret") or "")
    if not secret:
        return JSONResponse({"error": "webhook secret not configured"}, status_code=500)
    provided = request.headers.get("x-event-secret") or ""
    if not hmac.compare_digest(provided, secret):
        return JSONResponse({"error": "unauthorized"}, status_code=401)
    results = orchestrator.handle_bus_events(payload)
    return {"ok": all(item.get("ok") for item in results), "results": results}


@app.get("/api/models")
def models_api(request: Request):
    return request.app.state.orchestrator.models()


def main():
    import uvicorn
    config = get_config()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
    host = config.server.get("host", "127.0.0.1")
    port = int(config.server.get("port", 8096))
    uvicorn.run("sightline.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
