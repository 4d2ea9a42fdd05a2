from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from attachsync.attachment.service import AttachmentService
from attachsync.common.exceptions import ApiException
from attachsync.common.responses import ApiResponse, ErrorCode
from attachsync.database import get_db
from attachsync.upload.controller import SESSION_KINDS, UploadController
from attachsync.upload.errors import SessionRefusedError
from attachsync.upload.schemas import EnqueueRequest, EnqueueResponse, RetryFailedResponse, StartResponse
from attachsync.upload.types import AttachmentRef

router = APIRouter(prefix="/api/uploads", tags=["uploads"])


def get_controller(request: Request) -> UploadController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise ApiException(status_code=503, code=ErrorCode.INTERNAL, message="Upload controller is not ready")
    return controller


def _require_user(controller: UploadController) -> str:
    user_id = controller.gate.current_user_id()
    if not user_id:
        raise SessionRefusedError("no current user id")
    return user_id


@router.get("/status", response_model=ApiResponse)
def get_status(controller: UploadController = Depends(get_controller)) -> ApiResponse:
    snapshot = controller.status.snapshot()
    data = snapshot.model_dump(mode="json")
    data["state"] = controller.state
    return ApiResponse.ok(data)


@router.post("/start", response_model=ApiResponse)
def start_session(
    kind: str = Query(default="manual"),
    controller: UploadController = Depends(get_controller),
) -> ApiResponse:
    if kind not in SESSION_KINDS:
        raise ApiException(
            status_code=400,
            code=ErrorCode.INVALID_INPUT,
            message=f"kind must be one of {sorted(SESSION_KINDS)}",
        )
    started = controller.start(kind)  # type: ignore[arg-type]
    return ApiResponse.ok(StartResponse(started=started, session_kind=kind).model_dump(by_alias=True))


@router.post("/stop", response_model=ApiResponse)
def stop_session(
    timeout: float = Query(default=30.0, ge=0),
    controller: UploadController = Depends(get_controller),
) -> ApiResponse:
    snapshot = controller.stop(timeout=timeout)
    return ApiResponse.ok(snapshot.model_dump(mode="json"))


@router.post("/enqueue", response_model=ApiResponse)
def enqueue_attachment(
    payload: EnqueueRequest,
    start: bool = Query(default=False),
    controller: UploadController = Depends(get_controller),
) -> ApiResponse:
    item = controller.enqueue(
        AttachmentRef(library_id=payload.library_id, item_key=payload.item_key),
        payload.content_hash,
        file_path=payload.file_path,
        mime_type=payload.mime_type,
    )
    started = controller.start("background") if start else False
    resp = EnqueueResponse(
        content_hash=item.content_hash,
        library_id=item.ref.library_id,
        item_key=item.ref.item_key,
        attempt_count=item.attempt_count,
        started=started,
    )
    return ApiResponse.ok(resp.model_dump(by_alias=True))


@router.post("/retry-failed", response_model=ApiResponse)
def retry_failed(
    start: bool = Query(default=True),
    controller: UploadController = Depends(get_controller),
    db: Session = Depends(get_db),
) -> ApiResponse:
    user_id = _require_user(controller)
    reset = AttachmentService(db, user_id=user_id).retry_failed_uploads(controller.coordinator)
    started = controller.start("manual") if start and reset else False
    return ApiResponse.ok(RetryFailedResponse(reset=reset, started=started).model_dump(by_alias=True))


@router.get("/stats", response_model=ApiResponse)
def get_stats(
    controller: UploadController = Depends(get_controller),
    db: Session = Depends(get_db),
) -> ApiResponse:
    user_id = _require_user(controller)
    return ApiResponse.ok(AttachmentService(db, user_id=user_id).upload_stats())
