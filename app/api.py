"""
API 模块 (API Module)
====================

FastAPI 后端：图片批量识别、台账查询/删除、表格同步配置与触发、导出下载。
应用状态通过依赖注入获得，测试时可用 dependency_overrides 替换。
"""

from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from app.backend.process import process_uploads, validate_image_size
from medscan.export import EXPORT_FORMATS, MIME_TYPES, export_filename, render
from medscan.extract.queue_runner import ImageUpload, QueueEntryNotRemovable
from medscan.logger import get_logger
from medscan.pipeline import AppState, SyncNotConfigured, build_app_state

logger = get_logger(__name__)

app = FastAPI(title="MedScan Backend")

_state: Optional[AppState] = None


def get_state() -> AppState:
    """获取进程内 AppState 单例，首次调用时从配置构造。"""
    global _state
    if _state is None:
        _state = build_app_state()
    return _state


class SyncRequest(BaseModel):
    record_ids: Optional[List[str]] = None


class SyncConfigUpdate(BaseModel):
    webhook_url: Optional[str] = None
    auto_sync: Optional[bool] = None


@app.post("/scan")
async def scan_endpoint(
    files: List[UploadFile] = File(...),
    state: AppState = Depends(get_state),
):
    """上传一张或多张图片，按顺序识别并写入台账。"""
    uploads: List[ImageUpload] = []
    rejected: List[str] = []
    for f in files:
        content = await f.read()
        if not validate_image_size(f.filename or "upload", len(content)):
            rejected.append(f.filename or "upload")
            continue
        uploads.append(ImageUpload(filename=f.filename or "upload", payload=content, mime_type=f.content_type))
    if not uploads:
        raise HTTPException(status_code=400, detail="No usable images provided")

    result = process_uploads(state, uploads)
    result["rejected"] = rejected
    return JSONResponse(result)


@app.get("/queue")
def queue_endpoint(state: AppState = Depends(get_state)):
    entries = state.queue.visible_entries() if state.queue is not None else []
    return [e.model_dump(mode="json") for e in entries]


@app.delete("/queue/{entry_id}")
def remove_queue_entry(entry_id: str, state: AppState = Depends(get_state)):
    if state.queue is None:
        raise HTTPException(status_code=404, detail="Queue not available")
    try:
        entry = state.queue.remove(entry_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Queue entry not found")
    except QueueEntryNotRemovable as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return entry.model_dump(mode="json")


@app.get("/records")
def list_records(q: Optional[str] = None, state: AppState = Depends(get_state)):
    return [r.model_dump(mode="json") for r in state.search(q)]


@app.get("/stats")
def stats_endpoint(state: AppState = Depends(get_state)):
    return state.ledger.stats()


@app.delete("/records/{record_id}")
def delete_record(record_id: str, confirm: bool = False, state: AppState = Depends(get_state)):
    """删除记录，必须携带 confirm=true。"""
    if not confirm:
        raise HTTPException(status_code=400, detail="Deletion must be confirmed with confirm=true")
    if not state.delete_record(record_id, confirm=True):
        raise HTTPException(status_code=404, detail="Record not found")
    return {"deleted": record_id}


@app.get("/sync/config")
def get_sync_config(state: AppState = Depends(get_state)):
    return {**state.sync_config.model_dump(), "configured": state.is_sync_configured()}


@app.put("/sync/config")
def put_sync_config(update: SyncConfigUpdate, state: AppState = Depends(get_state)):
    try:
        config = state.update_sync_config(webhook_url=update.webhook_url, auto_sync=update.auto_sync)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {**config.model_dump(), "configured": state.is_sync_configured()}


@app.post("/sync")
def sync_endpoint(request: Optional[SyncRequest] = None, state: AppState = Depends(get_state)):
    """转发记录到表格；未配置 Webhook 时返回 409，前端应跳转到配置页。"""
    record_ids = request.record_ids if request is not None else None
    try:
        outcome = state.sync_records(record_ids)
    except SyncNotConfigured as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"outcome": outcome.value, "delivered": outcome.delivered, "unsynced": len(state.ledger.unsynced())}


@app.post("/sync/test")
def sync_test_endpoint(state: AppState = Depends(get_state)):
    try:
        outcome = state.test_sync_connection()
    except SyncNotConfigured as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"outcome": outcome.value, "delivered": outcome.delivered}


@app.get("/export/{fmt}")
def export_endpoint(fmt: str, q: Optional[str] = Query(default=None), state: AppState = Depends(get_state)):
    """以附件形式下载台账；CSV 无记录时返回 204。"""
    if fmt not in EXPORT_FORMATS:
        raise HTTPException(status_code=404, detail=f"Unknown export format: {fmt}")
    records = state.search(q)
    if fmt == "csv" and not records:
        return Response(status_code=204)
    return Response(
        content=render(records, fmt),
        media_type=MIME_TYPES[fmt],
        headers={"Content-Disposition": f'attachment; filename="{export_filename(fmt)}"'},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
