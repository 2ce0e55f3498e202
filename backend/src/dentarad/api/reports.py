"""API endpoints for diagnostic reports."""

import base64
import binascii
import json
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile, WebSocket, WebSocketDisconnect
from openai import OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from ..cases.manager import CaseManager
from ..db import get_db
from ..logging import get_logger
from ..reports.drafting import LiveTranscriptionBuffer, ReportDrafter, Transcriber
from ..reports.manager import ReportManager
from ..reports.models import (
    CaseWithReport,
    CompleteReportRequest,
    CreateReportRequest,
    DraftReportRequest,
    NewVersionRequest,
    Report,
    ReportImage,
    SaveReportRequest,
    SignatureVerification,
    SignReportRequest,
)
from ..security.sanitization import sanitize_html
from . import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from .auth import CurrentUser, StaffUser, user_from_token

logger = get_logger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])

MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_AUDIO_BYTES = 25 * 1024 * 1024


def get_report_manager(session: AsyncSession = Depends(get_db)) -> ReportManager:
    return ReportManager(session=session)


def get_drafter() -> ReportDrafter:
    return ReportDrafter()


def get_transcriber() -> Transcriber:
    return Transcriber()


async def _require_case_access(manager: ReportManager, user, case_id: UUID | str) -> CaseWithReport:
    bundle = await manager.fetch_case_with_report(case_id)
    if not user.can_access_clinic(str(bundle.case.clinic_id)):
        raise AuthorizationError("You do not have access to this case")
    return bundle


async def _require_report(manager: ReportManager, report_id: UUID) -> Report:
    report = await manager.get_report(report_id)
    if report is None:
        raise NotFoundError("Report", report_id)
    return report


@router.get("/case/{case_id}", response_model=CaseWithReport)
async def get_case_report(
    case_id: UUID,
    user: CurrentUser,
    manager: ReportManager = Depends(get_report_manager),
) -> CaseWithReport:
    """A case and its current report."""
    return await _require_case_access(manager, user, case_id)


@router.get("/case/{case_id}/versions", response_model=list[Report])
async def report_versions(
    case_id: UUID,
    user: CurrentUser,
    manager: ReportManager = Depends(get_report_manager),
) -> list[Report]:
    await _require_case_access(manager, user, case_id)
    return await manager.version_history(case_id)


@router.post("", response_model=Report, status_code=201)
async def create_report(
    body: CreateReportRequest,
    user: StaffUser,
    manager: ReportManager = Depends(get_report_manager),
) -> Report:
    """Start the report for a case."""
    bundle = await manager.fetch_case_with_report(body.case_id)
    if bundle.report is not None:
        raise ConflictError("This case already has a report")
    return await manager.create_report(body.case_id, bundle.case.clinical_question)


@router.put("/{report_id}")
async def save_report(
    report_id: UUID,
    body: SaveReportRequest,
    user: StaffUser,
    manager: ReportManager = Depends(get_report_manager),
) -> dict[str, bool]:
    """Autosave the report text. Identical content is not rewritten."""
    try:
        saved = await manager.save_report(
            report_id,
            sanitize_html(body.clinical_history),
            sanitize_html(body.report_content),
        )
    except ValueError as e:
        raise ValidationError(str(e))
    return {"saved": saved}


@router.post("/{report_id}/versions", response_model=Report, status_code=201)
async def create_report_version(
    report_id: UUID,
    body: NewVersionRequest,
    user: StaffUser,
    manager: ReportManager = Depends(get_report_manager),
) -> Report:
    """Reopen a report as a new version."""
    try:
        return await manager.create_report_version(report_id, body.reason)
    except ValueError as e:
        raise ValidationError(str(e))


@router.post("/{report_id}/sign", response_model=Report)
async def sign_report(
    report_id: UUID,
    body: SignReportRequest,
    user: StaffUser,
    manager: ReportManager = Depends(get_report_manager),
) -> Report:
    try:
        return await manager.sign_report(report_id, user, body.signatory_name, body.credentials)
    except ValueError as e:
        raise ValidationError(str(e))


@router.post("/{report_id}/finalize", response_model=Report)
async def finalize_report(
    report_id: UUID,
    user: StaffUser,
    manager: ReportManager = Depends(get_report_manager),
) -> Report:
    """Render and store the report PDF."""
    return await manager.finalize_report(report_id)


@router.get("/{report_id}/verify", response_model=SignatureVerification)
async def verify_report_signature(
    report_id: UUID,
    user: CurrentUser,
    manager: ReportManager = Depends(get_report_manager),
) -> SignatureVerification:
    report = await _require_report(manager, report_id)
    await _require_case_access(manager, user, report.case_id)
    return await manager.verify_signature(report_id)


@router.post("/complete")
async def complete_report(
    body: CompleteReportRequest,
    user: CurrentUser,
    manager: ReportManager = Depends(get_report_manager),
) -> dict:
    """Mark a case's report ready and email the clinic."""
    report_text = sanitize_html(body.report_text) if body.report_text is not None else None
    try:
        case = await manager.complete_case_report(user, body.case_id, report_text)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return {"success": True, "case_id": str(case.id), "status": case.status}


@router.get("/{report_id}/images", response_model=list[ReportImage])
async def list_report_images(
    report_id: UUID,
    user: CurrentUser,
    manager: ReportManager = Depends(get_report_manager),
) -> list[ReportImage]:
    report = await _require_report(manager, report_id)
    await _require_case_access(manager, user, report.case_id)
    return await manager.fetch_report_images(report_id)


@router.post("/{report_id}/images", response_model=ReportImage, status_code=201)
async def add_report_image(
    report_id: UUID,
    user: StaffUser,
    file: UploadFile = File(...),
    caption: str | None = Form(default=None, max_length=500),
    manager: ReportManager = Depends(get_report_manager),
) -> ReportImage:
    data = await file.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("Image is larger than 10 MB")
    try:
        return await manager.add_report_image(report_id, file.filename or "image.png", data, caption)
    except ValueError as e:
        raise ValidationError(str(e))


@router.post("/draft")
async def draft_report(
    body: DraftReportRequest,
    user: StaffUser,
    drafter: ReportDrafter = Depends(get_drafter),
    session: AsyncSession = Depends(get_db),
) -> dict:
    """Turn dictation into a structured report draft."""
    case = await CaseManager(session=session).get_case(body.case_id)
    if case is None:
        raise NotFoundError("Case", body.case_id)
    try:
        text = await drafter.generate_report(case, body.dictation, body.report_style)
    except ValueError as e:
        raise ValidationError(str(e))
    except OpenAIError as e:
        raise ExternalServiceError("OpenAI", str(e))
    return {"generated_report": text, "success": True}


@router.post("/transcribe")
async def transcribe_audio(
    user: StaffUser,
    file: UploadFile = File(...),
    transcriber: Transcriber = Depends(get_transcriber),
) -> dict:
    """Transcribe a recorded dictation."""
    audio = await file.read()
    if not audio:
        raise ValidationError("No audio provided")
    if len(audio) > MAX_AUDIO_BYTES:
        raise ValidationError("Audio is larger than 25 MB")
    try:
        text = await transcriber.transcribe(audio, file.filename or "audio.webm")
    except ValueError as e:
        raise ValidationError(str(e))
    except OpenAIError as e:
        raise ExternalServiceError("OpenAI", str(e))
    return {"text": text}


@router.websocket("/live-transcription")
async def live_transcription(
    websocket: WebSocket,
    transcriber: Transcriber = Depends(get_transcriber),
) -> None:
    """Stream PCM16 audio and receive transcripts every couple of seconds.

    The client authenticates with ``?token=``, then sends
    ``{"type": "audio_data", "audio": <base64 PCM16 24 kHz mono>}``
    messages. The server answers with ``processing``,
    ``transcription_completed`` and ``error`` messages.
    """
    try:
        user = user_from_token(websocket.query_params.get("token", ""))
    except AuthenticationError:
        await websocket.close(code=1008)
        return
    if not user.is_staff():
        await websocket.close(code=1008)
        return

    await websocket.accept()
    buffer = LiveTranscriptionBuffer(transcriber)
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
                chunk = base64.b64decode(message.get("audio") or "")
            except (json.JSONDecodeError, binascii.Error, AttributeError):
                continue
            if message.get("type") != "audio_data":
                continue

            buffer.add(chunk)
            if not buffer.should_flush():
                continue

            await websocket.send_json({"type": "processing"})
            try:
                transcript = await buffer.flush()
            except (OpenAIError, ValueError) as e:
                logger.warning(f"Live transcription failed: {e}")
                await websocket.send_json({"type": "error", "message": "Transcription failed"})
                continue
            if transcript:
                await websocket.send_json({"type": "transcription_completed", "transcript": transcript})
    except WebSocketDisconnect:
        buffer.clear()
