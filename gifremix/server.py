"""
GIF Remix - FastAPI host service
Lets a host UI drive remix sessions over HTTP: upload a source GIF, preview
overlay edits, generate, poll progress, cancel and download the result.
"""

import json
import logging
import os
import threading
import uuid
from contextlib import asynccontextmanager
from io import BytesIO
from typing import Dict

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import __version__
from .config import config_from_env
from .errors import CompositingError, DecodeError, GenerateInProgressError, RemixError, ValidationError
from .models import JobState, OverlayPosition, TextOverlaySpec
from .session import RemixSession

logger = logging.getLogger(__name__)

# Configuration
MAX_UPLOAD_BYTES = int(os.environ.get("GIFREMIX_MAX_UPLOAD_BYTES", 20 * 1024 * 1024))
CORS_ORIGINS = [o for o in os.environ.get("GIFREMIX_CORS_ORIGINS", "*").split(",") if o]


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    dispose_sessions()


app = FastAPI(title="GIF Remix", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_sessions: Dict[str, RemixSession] = {}
_sessions_lock = threading.Lock()


def get_session(session_id: str) -> RemixSession:
    with _sessions_lock:
        session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def build_overlay(
    text: str,
    font_family: str,
    font_size: int,
    font_weight: str,
    color: str,
    outline_color: str,
    outline_width: int,
    position_x: float,
    position_y: float,
) -> TextOverlaySpec:
    """Overlay spec from form fields, clamped to the supported ranges."""
    return TextOverlaySpec(
        text=text,
        font_family=font_family,
        font_size_px=font_size,
        font_weight=font_weight,
        fill_color=color,
        outline_color=outline_color,
        outline_width_px=outline_width,
        position=OverlayPosition(position_x, position_y),
    ).normalized()


def job_payload(session: RemixSession) -> dict:
    job = session.job
    if job is None:
        return {"state": JobState.IDLE.value, "progress": 0.0, "message": "", "error": None}
    return {
        "id": job.id,
        "state": job.state.value,
        "progress": round(job.progress, 4),
        "message": job.message,
        "error": job.error_message,
    }


@app.get("/api/health")
def health_check():
    return {"status": "healthy", "version": __version__}


@app.post("/api/sessions")
async def create_session(file: UploadFile = File(...), sourceId: str = Form("")):
    """Decode an uploaded source GIF and open a remix session for it."""
    data = await file.read()
    if not data:
        return JSONResponse(status_code=400, content={"error": "No GIF file provided."})
    if len(data) > MAX_UPLOAD_BYTES:
        return JSONResponse(status_code=413, content={"error": "Source GIF is too large."})
    try:
        session = RemixSession.from_bytes(data, source_id=sourceId or None, config=config_from_env())
    except (DecodeError, ValidationError) as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    session_id = uuid.uuid4().hex
    with _sessions_lock:
        _sessions[session_id] = session
    logger.info("Opened session %s (%dx%d, %d frames)", session_id, session.width, session.height, session.frame_count)
    return {
        "id": session_id,
        "width": session.width,
        "height": session.height,
        "frame_count": session.frame_count,
    }


@app.post("/api/sessions/{session_id}/preview")
def preview(
    session_id: str,
    text: str = Form(""),
    fontFamily: str = Form("Impact"),
    fontSize: int = Form(48),
    fontWeight: str = Form("bold"),
    color: str = Form("#ffffff"),
    outlineColor: str = Form("#000000"),
    outlineWidth: int = Form(3),
    positionX: float = Form(0.5),
    positionY: float = Form(0.9),
):
    """Render the first frame with the given overlay as PNG."""
    session = get_session(session_id)
    try:
        overlay = build_overlay(
            text, fontFamily, fontSize, fontWeight, color, outlineColor, outlineWidth, positionX, positionY
        )
        image = session.set_overlay(overlay)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except (GenerateInProgressError, CompositingError) as e:
        return JSONResponse(status_code=409, content={"error": str(e)})

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return Response(content=buffer.getvalue(), media_type="image/png")


@app.post("/api/sessions/{session_id}/generate", status_code=202)
def generate(
    session_id: str,
    text: str = Form(""),
    fontFamily: str = Form("Impact"),
    fontSize: int = Form(48),
    fontWeight: str = Form("bold"),
    color: str = Form("#ffffff"),
    outlineColor: str = Form("#000000"),
    outlineWidth: int = Form(3),
    positionX: float = Form(0.5),
    positionY: float = Form(0.9),
    quality: int = Form(10),
):
    """Start generating the remix; poll the job endpoint for progress."""
    session = get_session(session_id)
    try:
        overlay = build_overlay(
            text, fontFamily, fontSize, fontWeight, color, outlineColor, outlineWidth, positionX, positionY
        )
        session.generate(quality=quality, overlay=overlay)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except (GenerateInProgressError, CompositingError) as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    return job_payload(session)


@app.get("/api/sessions/{session_id}/job")
def job_status(session_id: str):
    return job_payload(get_session(session_id))


@app.post("/api/sessions/{session_id}/cancel")
def cancel(session_id: str):
    session = get_session(session_id)
    session.cancel()
    return job_payload(session)


@app.get("/api/sessions/{session_id}/output")
def output(session_id: str):
    """Download the finished GIF; overlay metadata travels in a header."""
    session = get_session(session_id)
    try:
        result = session.result()
    except RemixError as e:
        return JSONResponse(status_code=409, content={"error": str(e)})
    return Response(
        content=result.blob,
        media_type="image/gif",
        headers={
            "Content-Disposition": f"attachment; filename={result.filename}",
            "X-Overlay-Metadata": json.dumps(result.metadata),
        },
    )


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str):
    with _sessions_lock:
        session = _sessions.pop(session_id, None)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    session.dispose()
    return {"status": "disposed"}


def dispose_sessions():
    """Dispose every open session; runs when the app shuts down."""
    with _sessions_lock:
        sessions = list(_sessions.values())
        _sessions.clear()
    for session in sessions:
        session.dispose()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("GIFREMIX_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.environ.get("GIFREMIX_HOST", "0.0.0.0"), port=int(os.environ.get("GIFREMIX_PORT", 8000)))
