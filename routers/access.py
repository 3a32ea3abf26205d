"""
Door access APIs: verification called by door kiosks, and the access log.

Verification handlers are plain ``def`` so FastAPI runs them in its threadpool;
the engine blocks on relay I/O and per-door locks.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from auth.dependencies import get_db_session, require_host
from core.errors import ERROR_STATUS, ErrorKind
from core.logger import logger
from core.validators import to_naive_utc, validate_file_size, validate_image_extension
from database.models import EventType, User, UserRole
from services.access_log_service import AccessLogFilter, AccessLogService
from services.verification_service import Decision, VerificationEngine, VerificationResult
from storage.image_store import ALLOWED_IMAGE_TYPES, is_valid_image_ref
import config


router = APIRouter(prefix="/api/access", tags=["access"])


def get_verification_engine() -> VerificationEngine:
    """Verification engine dependency."""
    if config.verification_engine is None:
        raise HTTPException(status_code=503, detail="Verification engine not initialized")
    return config.verification_engine


def get_image_store():
    if config.image_store is None:
        raise HTTPException(status_code=503, detail="Image store not initialized")
    return config.image_store


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# Request Models
class CaptureRequest(BaseModel):
    """Base for requests that may reference an uploaded capture."""
    imageRef: Optional[str] = None

    @field_validator("imageRef")
    @classmethod
    def image_ref_from_store(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_valid_image_ref(value):
            raise ValueError("imageRef must be a key returned by /api/access/captures")
        return value


class CodeVerifyRequest(BaseModel):
    """Primary verification by access code."""
    doorId: int
    accessCode: str = Field(..., min_length=1, max_length=72)


class FaceVerifyRequest(CaptureRequest):
    """Primary verification by face descriptor."""
    doorId: int
    faceDescriptor: List[float] = Field(..., min_length=1)


class DoubleVerifyRequest(CaptureRequest):
    """Second factor: exactly one of accessCode or faceDescriptor."""
    doorId: int
    userId: int
    accessCode: Optional[str] = Field(None, min_length=1, max_length=72)
    faceDescriptor: Optional[List[float]] = Field(None, min_length=1)

    @model_validator(mode="after")
    def exactly_one_credential(self):
        if (self.accessCode is None) == (self.faceDescriptor is None):
            raise ValueError("Provide exactly one of accessCode or faceDescriptor")
        return self


class MotionRequest(CaptureRequest):
    """Motion detected in front of a door."""
    doorId: int


class AccessLogListResponse(BaseModel):
    data: List[dict]
    total: int
    page: int
    limit: int
    totalPages: int


def _decision_response(result: VerificationResult):
    """Map an engine result onto the HTTP response."""
    if result.decision == Decision.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    if result.decision == Decision.FORBIDDEN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=result.message)

    payload: Dict[str, Any] = {
        "success": result.success,
        "decision": result.decision.value,
        "doubleVerificationRequired": result.double_verification_required,
        "message": result.message,
    }
    if result.principal is not None:
        payload["user"] = {
            "id": result.principal.id,
            "name": result.principal.name,
            "role": result.principal.role.value,
        }

    if result.decision == Decision.DENIED:
        payload["reason"] = result.reason.value
        return JSONResponse(status_code=ERROR_STATUS[result.reason], content=payload)

    if result.decision == Decision.GRANTED:
        payload["doorStatus"] = result.door_status
        payload["actuatorError"] = result.actuator_error
    return payload


@router.post("/code")
def verify_code(
    body: CodeVerifyRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_verification_engine),
    db: Session = Depends(get_db_session)
):
    """
    Verify access by code.
    Public (door kiosk).
    """
    result = engine.verify_code(db, body.doorId, body.accessCode, ip_address=_client_ip(request))
    return _decision_response(result)


@router.post("/face")
def verify_face(
    body: FaceVerifyRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_verification_engine),
    db: Session = Depends(get_db_session)
):
    """
    Verify access by face descriptor.
    Public (door kiosk).
    """
    result = engine.verify_face(
        db, body.doorId, body.faceDescriptor,
        image_ref=body.imageRef, ip_address=_client_ip(request),
    )
    return _decision_response(result)


@router.post("/double-verify")
def double_verify(
    body: DoubleVerifyRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_verification_engine),
    db: Session = Depends(get_db_session)
):
    """
    Complete a step-up with the second credential.
    Public (door kiosk).
    """
    result = engine.double_verify(
        db,
        body.doorId,
        body.userId,
        access_code=body.accessCode,
        face_descriptor=body.faceDescriptor,
        image_ref=body.imageRef,
        ip_address=_client_ip(request),
    )
    return _decision_response(result)


@router.post("/motion")
def report_motion(
    body: MotionRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_verification_engine),
    db: Session = Depends(get_db_session)
):
    """
    Record an approach. Public (door kiosk).
    """
    result = engine.report_motion(db, body.doorId, image_ref=body.imageRef, ip_address=_client_ip(request))
    if result.decision == Decision.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    return {"success": True, "message": result.message}


@router.post("/captures", status_code=status.HTTP_201_CREATED)
def upload_capture(
    file: UploadFile = File(...),
    image_store=Depends(get_image_store)
):
    """
    Upload a door camera capture; the returned imageRef is passed to /face,
    /double-verify or /motion. Public (door kiosk).
    """
    extension = validate_image_extension(file.filename, ALLOWED_IMAGE_TYPES)
    if extension is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type. Allowed: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}"
        )

    max_bytes = config.MAX_IMAGE_SIZE_MB * 1024 * 1024
    data = file.file.read(max_bytes + 1)
    is_valid_size, size_error = validate_file_size(len(data), max_bytes)
    if not is_valid_size:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=size_error)

    try:
        image_ref = image_store.save(data, extension)
    except (OSError, ClientError, BotoCoreError) as e:
        logger.error(f"Failed to store capture image: {e}", exc_info=True)
        raise HTTPException(
            status_code=ERROR_STATUS[ErrorKind.STORE_ERROR],
            detail="Failed to store image"
        )
    return {"success": True, "imageRef": image_ref}


@router.get("/logs", response_model=AccessLogListResponse)
def list_access_logs(
    doorId: Optional[int] = Query(None),
    userId: Optional[int] = Query(None),
    eventType: Optional[EventType] = Query(None),
    startDate: Optional[datetime] = Query(None),
    endDate: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_host),
    db: Session = Depends(get_db_session)
):
    """
    List access events, newest first.
    Administrators see every door; hosts only doors they hold a grant on.
    """
    if startDate and endDate and to_naive_utc(startDate) > to_naive_utc(endDate):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startDate must be before endDate")

    filters = AccessLogFilter(
        door_id=doorId,
        user_id=userId,
        event_type=eventType,
        start_date=to_naive_utc(startDate),
        end_date=to_naive_utc(endDate),
    )
    if current_user.role != UserRole.ADMINISTRATOR:
        filters.door_ids = current_user.door_ids()

    result = AccessLogService.query(db, filters, page=page, limit=limit)
    return AccessLogListResponse(
        data=[AccessLogService.to_dict(event) for event in result.events],
        total=result.total,
        page=result.page,
        limit=result.limit,
        totalPages=result.total_pages,
    )


@router.get("/logs/{log_id}/image")
def get_access_log_image(
    log_id: int,
    current_user: User = Depends(require_host),
    image_store=Depends(get_image_store),
    db: Session = Depends(get_db_session)
):
    """
    Fetch the capture attached to an access event.
    """
    event = AccessLogService.get(db, log_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Access log not found")

    if current_user.role != UserRole.ADMINISTRATOR and event.door_id not in current_user.door_ids():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    if not event.image_ref:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No image for this event")

    loaded = image_store.load(event.image_ref)
    if loaded is None:
        logger.warning(f"Access log {log_id} references missing image {event.image_ref}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Image not found")

    data, media_type = loaded
    return Response(content=data, media_type=media_type)
