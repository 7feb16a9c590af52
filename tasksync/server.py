from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .coordinator import ImportCoordinator
from .errors import SyncInProgressError
from .models import ImportStatus

app = FastAPI(title="Notion Task Sync")
coordinator: Optional[ImportCoordinator] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_coordinator() -> ImportCoordinator:
    if not coordinator:
        raise HTTPException(status_code=503, detail="Sync engine not ready")
    return coordinator

def _check_resource(c: ImportCoordinator, resource: str):
    if resource not in c.ctx.schemas:
        raise HTTPException(status_code=404, detail=f"Unknown resource {resource}")

@app.get("/healthz")
def healthz():
    if not coordinator:
        return {"status": "starting"}

    failing = [r for r in coordinator.ctx.schemas if coordinator.status(r).status == ImportStatus.ERROR]
    if failing:
        # Errors need user action (credentials, database id), paused imports resume on their own
        return {"status": "error", "resources": failing}
    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    c = get_coordinator()
    return {
        resource: {
            **c.status(resource).model_dump(mode="json"),
            "records": c.ctx.records.count(resource),
        }
        for resource in c.ctx.schemas
    }

@app.get("/sync-timestamps", dependencies=[Depends(get_token)])
def sync_timestamps():
    return get_coordinator().get_sync_timestamps()

@app.post("/imports/{resource}", dependencies=[Depends(get_token)])
async def start_import(resource: str):
    c = get_coordinator()
    _check_resource(c, resource)
    try:
        c.start_import(resource)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return c.status(resource).model_dump(mode="json")

@app.post("/imports/{resource}/reset", dependencies=[Depends(get_token)])
def reset_import(resource: str, clear_records: bool = False):
    c = get_coordinator()
    _check_resource(c, resource)
    try:
        report = c.reset_import(resource, clear_records=clear_records)
    except SyncInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return report.model_dump()

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not coordinator:
        return ""

    lines = []
    for resource in coordinator.ctx.schemas:
        snap = coordinator.status(resource)
        lines.extend([
            f'tasksync_records{{resource="{resource}"}} {coordinator.ctx.records.count(resource)}',
            f'tasksync_import_running{{resource="{resource}"}} {int(coordinator.is_running(resource))}',
            f'tasksync_import_records_imported{{resource="{resource}"}} {snap.records_imported}',
            f'tasksync_import_current_partition{{resource="{resource}"}} {snap.current_partition}',
        ])
    return "\n".join(lines)
