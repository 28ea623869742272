"""
Crowd Count API
===============

FastAPI service that counts people in camera frames and videos using a
hosted object-detection workflow.

    • Live feed over WebSocket: producers push frames, every connected
      viewer receives the annotated result and a density heatmap
    • Bounded live concurrency: MAX_CONCURRENT frames in flight, up to
      QUEUE_CAPACITY more queued FIFO, anything beyond is dropped
    • Threshold alerts with a cooldown, threshold adjustable at runtime
    • Single-image prediction and batch video annotation with statistics

Endpoints:
    WS   /ws                     — live feed (frame / updateThreshold in,
                                   ack / prediction / thresholdUpdated out)
    POST /predict                — annotate one image
    GET  /uploads/{name}         — stored /predict upload
    POST /predict-video          — blocking video annotation (returns envelope)
    POST /predict-video/async    — async video annotation (returns job_id)
    GET  /status/{id}            — poll video job progress
    GET  /download/{id}          — annotated video
    GET  /download/{id}/csv      — per-frame CSV
    GET  /download/{id}/frames/{n} — one annotated frame
    DELETE /jobs/{id}            — manual cleanup
    GET  /health                 — liveness / occupancy probe

Run locally:
    uvicorn main:app --host 0.0.0.0 --port 3000
"""

import asyncio
import base64
import binascii
import json
import logging
import os
import re
import shutil
import threading
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, ValidationError

from broadcaster import ViewerRegistry
from errors import CapacityError, InferenceError, VideoJobError
from inference import DEFAULT_TIMEOUT_SECONDS, InferenceClient
from renderer import render_dots, render_heatmap
from scheduler import AlertState, DispatchScheduler, FrameJob
from video_pipeline import JobStage, PipelineConfig, VideoJobResult, VideoPipeline


# ---------------------------------------------------------------------------
#  Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("crowdcount-api")


# ---------------------------------------------------------------------------
#  Config from environment
# ---------------------------------------------------------------------------
ROBOFLOW_ENDPOINT = os.getenv("ROBOFLOW_ENDPOINT")
ROBOFLOW_API_KEY = os.getenv("ROBOFLOW_API_KEY")
INFERENCE_TIMEOUT_SECONDS = float(os.getenv("INFERENCE_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
UPLOAD_CONFIDENCE = float(os.getenv("UPLOAD_CONFIDENCE", "0.3"))

MAX_CONCURRENT = int(os.getenv("MAX_CONCURRENT", "2"))
QUEUE_CAPACITY = int(os.getenv("QUEUE_CAPACITY", "60"))
ALERT_THRESHOLD = int(os.getenv("ALERT_THRESHOLD", "5"))
ALERT_COOLDOWN_SECONDS = float(os.getenv("ALERT_COOLDOWN_SECONDS", str(5 * 60)))

VIDEO_FPS = float(os.getenv("VIDEO_FPS", "2"))
FRAME_DELAY_SECONDS = float(os.getenv("FRAME_DELAY_SECONDS", "0.3"))
MAX_CONCURRENT_VIDEO_JOBS = int(os.getenv("MAX_CONCURRENT_VIDEO_JOBS", "2"))

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "/tmp/crowdcount_uploads"))
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "/tmp/crowdcount_outputs"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "100"))
JOB_TTL_MINUTES = int(os.getenv("JOB_TTL_MINUTES", "30"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")

VALID_VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".webm"}
VALID_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".webp"}


# ---------------------------------------------------------------------------
#  Shared state
# ---------------------------------------------------------------------------
JOBS: dict[str, dict] = {}
_client: InferenceClient | None = None
_scheduler: DispatchScheduler | None = None
_pipeline: VideoPipeline | None = None
_viewers = ViewerRegistry()
_video_semaphore: asyncio.Semaphore | None = None  # initialised in lifespan
_last_alert: Optional[dict] = None       # most recent threshold alert, see /health


# ---------------------------------------------------------------------------
#  Pydantic models
# ---------------------------------------------------------------------------

class PredictResponse(BaseModel):
    success: bool = True
    count: int
    annotatedImage: str
    predictions: list[dict]
    originalImage: str


class Statistics(BaseModel):
    totalPeople: int
    averagePeople: float
    maxPeople: int
    duration: str


class FrameResultOut(BaseModel):
    frameNumber: int
    annotatedFrame: str
    count: int
    predictions: list[dict]
    timestamp: str
    error: Optional[str] = None


class VideoResponse(BaseModel):
    success: bool = True
    jobId: str
    originalVideo: str
    annotatedVideo: str
    framesCsv: str
    totalFrames: int
    validFrames: int
    results: list[FrameResultOut]
    statistics: Statistics


class JobStatus(BaseModel):
    """Returned by /predict-video/async and /status."""
    job_id: str
    status: str                  # pending | extracting | processing | reassembling | completed | failed
    progress: Optional[float] = None
    message: Optional[str] = None
    output_url: Optional[str] = None
    csv_url: Optional[str] = None
    statistics: Optional[Statistics] = None
    total_frames: Optional[int] = None
    valid_frames: Optional[int] = None


class ThresholdUpdate(BaseModel):
    threshold: int = Field(..., ge=1)


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "error": message})


# ---------------------------------------------------------------------------
#  Auto-cleanup
# ---------------------------------------------------------------------------

def _cleanup_loop():
    """Background thread: run the TTL sweep once a minute, forever.

    Daemon thread, so it dies with the process.  Jobs still pending or
    processing are never touched, only finished ones.
    """
    while True:
        time.sleep(60)
        _sweep_expired(time.time())


def _sweep_expired(now: float):
    """Delete finished jobs and stored single-image uploads older than JOB_TTL_MINUTES."""
    ttl = JOB_TTL_MINUTES * 60
    expired = [
        jid for jid, j in list(JOBS.items())
        if j.get("status") in (JobStage.COMPLETED, JobStage.FAILED)
        and now - j.get("_created", now) > ttl
    ]
    for jid in expired:
        _cleanup_job(jid)
        log.info("Auto-cleaned expired job %s", jid)

    # /predict uploads have no job record; their age is the file's mtime
    images = _image_dir()
    if images.exists():
        for p in images.iterdir():
            if p.is_file() and now - p.stat().st_mtime > ttl:
                p.unlink(missing_ok=True)
                log.info("Auto-cleaned expired upload %s", p.name)


def _cleanup_job(job_id: str):
    """Remove all on-disk artefacts and the in-memory record for a job."""
    d = _job_output_dir(job_id)
    if d.exists():
        shutil.rmtree(d, ignore_errors=True)
    job = JOBS.pop(job_id, None)
    if job and job.get("_upload"):
        Path(job["_upload"]).unlink(missing_ok=True)


def _image_dir() -> Path:
    return UPLOAD_DIR / "images"


# ---------------------------------------------------------------------------
#  Live path
# ---------------------------------------------------------------------------

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _record_alert(count: int, threshold: int):
    """Scheduler alert hook.  The scheduler has already logged the alert and
    applied the cooldown; this only keeps the latest one for /health."""
    global _last_alert
    _last_alert = {"count": count, "threshold": threshold, "at": time.time()}


def _render_live(frame: bytes, detections) -> tuple[bytes, bytes]:
    return render_dots(frame, detections), render_heatmap(frame, detections)


async def _process_live_frame(job: FrameJob) -> Optional[int]:
    """Inference + dots + heatmap for one admitted frame, broadcast to all viewers."""
    try:
        result = await asyncio.to_thread(_client.infer, job.source_bytes)
        annotated, heatmap = await asyncio.to_thread(_render_live, job.source_bytes, result.detections)
    except Exception as e:
        log.error("Live frame processing error: %s", e, exc_info=not isinstance(e, InferenceError))
        await _viewers.broadcast("prediction", {"success": False, "error": str(e) or "Inference error"})
        return None

    await _viewers.broadcast("prediction", {
        "success": True,
        "count": result.count,
        "annotatedImage": _b64(annotated),
        "heatmapImage": _b64(heatmap),
        "predictions": result.predictions,
        "threshold": _scheduler.threshold,
    })
    return result.count


def _decode_frame(image_b64: str) -> bytes:
    if "," in image_b64[:64] and image_b64.startswith("data:"):
        image_b64 = image_b64.split(",", 1)[1]
    return base64.b64decode(image_b64, validate=True)


async def _handle_frame(ws: WebSocket, data: dict):
    image_b64 = data.get("imageBase64") if isinstance(data, dict) else None
    if not image_b64 or not isinstance(image_b64, str):
        await _viewers.send(ws, "prediction", {"success": False, "error": "No frame provided"})
        return
    try:
        frame = _decode_frame(image_b64)
    except (binascii.Error, ValueError):
        await _viewers.send(ws, "prediction", {"success": False, "error": "Invalid frame encoding"})
        return

    try:
        _scheduler.submit(FrameJob(source_bytes=frame, submitter=ws))
    except CapacityError as e:
        await _viewers.send(ws, "prediction", {"success": False, "error": str(e)})
        return
    await _viewers.acknowledge(ws)


async def _handle_threshold(data: dict):
    try:
        update = ThresholdUpdate.model_validate(data)
    except ValidationError as e:
        log.warning("Ignoring invalid threshold update %r: %s", data, e.errors()[0].get("msg"))
        return
    threshold = _scheduler.update_threshold(update.threshold)
    await _viewers.broadcast("thresholdUpdated", {"threshold": threshold})


# ---------------------------------------------------------------------------
#  App lifecycle
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hook for the FastAPI application.

    Nothing here is slow: the detection model lives behind an HTTP
    endpoint, so there is no model to load and the app is ready as soon
    as uvicorn binds the port.  Missing credentials are only a warning;
    every inference call then fails with an error envelope instead of the
    process refusing to start, which keeps /health reachable for debugging.

    Startup sequence:
        1. Create upload, image and output directories
        2. Build the inference client, live scheduler and video pipeline
        3. Initialise the video-job semaphore (must be inside the loop)
        4. Background cleanup thread starts

    Shutdown:
        Pending live frames are dropped, frames still in flight are
        cancelled, and the shared HTTP session is closed.  Video jobs
        running in worker threads are not waited for.
    """
    global _client, _scheduler, _pipeline, _video_semaphore, _last_alert

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    _image_dir().mkdir(parents=True, exist_ok=True)
    _last_alert = None
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    if not ROBOFLOW_ENDPOINT or not ROBOFLOW_API_KEY:
        log.warning("ROBOFLOW_ENDPOINT or ROBOFLOW_API_KEY missing from environment")

    _client = InferenceClient(ROBOFLOW_ENDPOINT, ROBOFLOW_API_KEY, timeout=INFERENCE_TIMEOUT_SECONDS)
    _scheduler = DispatchScheduler(
        _process_live_frame,
        concurrency_limit=MAX_CONCURRENT,
        capacity_limit=QUEUE_CAPACITY,
        alerts=AlertState(ALERT_THRESHOLD, ALERT_COOLDOWN_SECONDS),
        on_alert=_record_alert,
    )
    _pipeline = VideoPipeline(_client, PipelineConfig(
        frame_rate_hz=VIDEO_FPS,
        frame_delay_seconds=FRAME_DELAY_SECONDS,
        confidence=UPLOAD_CONFIDENCE,
    ))
    _video_semaphore = asyncio.Semaphore(MAX_CONCURRENT_VIDEO_JOBS)
    log.info("Live limit %d in flight / %d queued, %d concurrent video job(s)",
             MAX_CONCURRENT, QUEUE_CAPACITY, MAX_CONCURRENT_VIDEO_JOBS)

    cleanup_thread = threading.Thread(target=_cleanup_loop, daemon=True)
    cleanup_thread.start()

    yield

    log.info("Shutting down")
    await _scheduler.shutdown()
    _client.close()


app = FastAPI(
    title="Crowd Count API",
    description=(
        "Count people in camera frames and uploaded videos.\n\n"
        "Live frames are pushed over the /ws WebSocket and every connected "
        "viewer receives the annotated frame and heatmap.  Videos are sampled "
        "at a fixed rate, annotated with a statistics panel and re-encoded."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def _safe_name(filename: str) -> str:
    return re.sub(r"[^\w.-]", "_", filename or "upload")


def _validate_video(filename: str, size: int):
    """Reject unsupported file types and oversized uploads early."""
    ext = Path(filename or "").suffix.lower()
    if ext not in VALID_VIDEO_EXTENSIONS:
        raise HTTPException(
            400,
            f"Unsupported format '{ext}'. Accepted: {', '.join(sorted(VALID_VIDEO_EXTENSIONS))}",
        )
    if size > MAX_UPLOAD_MB * 1024 * 1024:
        raise HTTPException(
            413,
            f"File too large ({size / 1024 / 1024:.0f} MB). Max: {MAX_UPLOAD_MB} MB",
        )


def _validate_image(upload: UploadFile):
    ctype = (upload.content_type or "").lower()
    ext = Path(upload.filename or "").suffix.lower()
    if not ctype.startswith("image/") and ext not in VALID_IMAGE_EXTENSIONS:
        raise HTTPException(400, "Only image files are allowed")


def _job_output_dir(job_id: str) -> Path:
    return OUTPUT_DIR / job_id


async def _save_upload(upload: UploadFile, path: Path) -> int:
    """Stream an upload to disk in 1 MB chunks.

    Returns the total number of bytes written.  Raises HTTPException(413)
    if the stream exceeds MAX_UPLOAD_MB, which catches chunked uploads
    where Content-Length was missing or wrong.  The partial file is removed.
    """
    total = 0
    with open(path, "wb") as f:
        while chunk := await upload.read(1024 * 1024):  # 1 MB chunks
            total += len(chunk)
            if total > MAX_UPLOAD_MB * 1024 * 1024:
                f.close()
                path.unlink(missing_ok=True)
                raise HTTPException(413, f"Upload exceeds {MAX_UPLOAD_MB} MB limit")
            f.write(chunk)
    return total


def _progress_cb(job_id: str):
    """Return a callback that mirrors pipeline progress into JOBS."""
    def _cb(stage: JobStage, current: int, total: int, message: str):
        job = JOBS.get(job_id)
        # completion is recorded by _run_pipeline once the result is stored
        if job is None or stage == JobStage.COMPLETED:
            return
        job["status"] = stage.value
        job["message"] = message
        if stage == JobStage.PROCESSING:
            job["progress"] = round(100 * current / max(total, 1), 1)
    return _cb


def _new_video_job(upload: UploadFile) -> tuple[str, Path]:
    job_id = str(uuid.uuid4())
    ext = Path(upload.filename or "").suffix.lower()
    video_path = UPLOAD_DIR / f"{job_id}{ext}"
    JOBS[job_id] = {
        "status": JobStage.PENDING.value, "progress": 0.0,
        "message": "Queued", "output_url": None, "csv_url": None,
        "_created": time.time(), "_upload": str(video_path),
        "_filename": _safe_name(upload.filename), "_result": None,
    }
    return job_id, video_path


def _run_pipeline(job_id: str, video_path: Path) -> Optional[VideoJobResult]:
    """Blocking worker, called through asyncio.to_thread.

    Records the outcome in JOBS.  Returns None if the job failed.
    """
    try:
        log.info("Job %s: processing %s", job_id, video_path.name)
        result = _pipeline.process_video(
            video_path, _job_output_dir(job_id), progress_callback=_progress_cb(job_id))
    except VideoJobError as e:
        JOBS[job_id].update(status=JobStage.FAILED.value, message=f"Failed: {e}")
        log.error("Job %s: failed — %s", job_id, e)
        return None
    except Exception as e:
        JOBS[job_id].update(status=JobStage.FAILED.value, message=f"Failed: {e}")
        log.error("Job %s: failed — %s", job_id, e, exc_info=True)
        return None

    JOBS[job_id].update(
        status=JobStage.COMPLETED.value, progress=100.0, message="Processing complete",
        output_url=f"/download/{job_id}", csv_url=f"/download/{job_id}/csv",
        _result=result,
    )
    log.info("Job %s: completed (%d frames, %d valid)",
             job_id, len(result.frames), result.valid_frames)
    return result


async def _run_pipeline_gated(job_id: str, video_path: Path) -> Optional[VideoJobResult]:
    """Acquire the video semaphore, then run the pipeline in a thread."""
    JOBS[job_id]["message"] = "Waiting for available processing slot"
    log.info("Job %s: waiting for semaphore (%d max concurrent)",
             job_id, MAX_CONCURRENT_VIDEO_JOBS)

    async with _video_semaphore:
        # The pipeline is blocking (ffmpeg, HTTP, cv2, time.sleep between
        # frames), so it runs in the default executor.  The semaphore stays
        # held until the thread returns, which bounds how many videos hit
        # the inference service at once.  It does NOT share a budget with
        # the live scheduler.
        return await asyncio.to_thread(_run_pipeline, job_id, video_path)


def _video_response(job_id: str, result: VideoJobResult) -> VideoResponse:
    return VideoResponse(
        jobId=job_id,
        originalVideo=JOBS[job_id]["_filename"],
        annotatedVideo=f"/download/{job_id}",
        framesCsv=f"/download/{job_id}/csv",
        totalFrames=len(result.frames),
        validFrames=result.valid_frames,
        results=[
            FrameResultOut(
                frameNumber=f.frame_number,
                annotatedFrame=f"/download/{job_id}/frames/{f.frame_number + 1}",
                count=f.count,
                predictions=f.predictions,
                timestamp=f.timestamp_label,
                error=f.error,
            )
            for f in result.frames
        ],
        statistics=Statistics(**result.statistics.to_dict()),
    )


def _job_status(job_id: str) -> JobStatus:
    job = JOBS[job_id]
    result: Optional[VideoJobResult] = job.get("_result")
    extra = {}
    if result is not None:
        extra = {
            "statistics": Statistics(**result.statistics.to_dict()),
            "total_frames": len(result.frames),
            "valid_frames": result.valid_frames,
        }
    return JobStatus(
        job_id=job_id,
        **{k: v for k, v in job.items() if not k.startswith("_")},
        **extra,
    )


def _require_completed(job_id: str):
    if job_id not in JOBS:
        raise HTTPException(404, "Job not found")
    if JOBS[job_id]["status"] != JobStage.COMPLETED:
        raise HTTPException(400, f"Not ready: {JOBS[job_id]['status']}")


# ---------------------------------------------------------------------------
#  WebSocket
# ---------------------------------------------------------------------------

@app.websocket("/ws")
async def live_feed(ws: WebSocket):
    """Shared live feed.  Every connection is both a producer and a viewer.

    Messages are JSON text frames ``{"event": ..., "data": {...}}``.  A
    message that cannot be understood (binary frame, invalid JSON, not an
    object) is answered with a ``prediction`` error to the sender only and
    the connection stays open.
    """
    await ws.accept()
    _viewers.connect(ws)
    try:
        while True:
            # receive() rather than receive_text(): the latter raises
            # KeyError on a binary frame and would drop the connection
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            raw = message.get("text")
            try:
                msg = json.loads(raw) if raw is not None else None
            except ValueError:
                msg = None
            if not isinstance(msg, dict):
                await _viewers.send(ws, "prediction", {"success": False, "error": "Malformed message"})
                continue

            event, data = msg.get("event"), msg.get("data") or {}
            if event == "frame":
                await _handle_frame(ws, data)
            elif event == "updateThreshold":
                await _handle_threshold(data)
            else:
                log.debug("Ignoring unknown event %r", event)
    except WebSocketDisconnect:
        log.info("Client disconnected")
    finally:
        _viewers.disconnect(ws)


# ---------------------------------------------------------------------------
#  Endpoints
# ---------------------------------------------------------------------------

@app.post("/predict", response_model=PredictResponse)
async def predict(image: UploadFile = File(..., description="Image file")):
    """Count people in a single image and return it annotated with dots."""
    _validate_image(image)
    name = f"{int(time.time() * 1000)}-{_safe_name(image.filename)}"
    path = _image_dir() / name
    await _save_upload(image, path)
    frame = path.read_bytes()

    try:
        result = await asyncio.to_thread(_client.infer, frame, UPLOAD_CONFIDENCE)
    except InferenceError as e:
        log.error("Predict error: %s", e)
        return _error(502, str(e) or "Prediction failed")

    _scheduler.record_count(result.count)
    annotated = await asyncio.to_thread(render_dots, frame, result.detections)
    return PredictResponse(
        count=result.count,
        annotatedImage=_b64(annotated),
        predictions=result.predictions,
        originalImage=f"/uploads/{name}",
    )


@app.get("/uploads/{name}")
async def get_upload(name: str):
    """Serve a stored /predict upload until the TTL sweep expires it."""
    p = _image_dir() / name
    if name != _safe_name(name) or not p.is_file():
        raise HTTPException(404, "Upload not found")
    return FileResponse(str(p))


@app.post("/predict-video", response_model=VideoResponse)
async def predict_video(
    video: UploadFile = File(..., description="Video file (.mp4, .mov, .avi, .mkv, .webm)"),
):
    """**Synchronous** video annotation — blocks until the annotated video exists.

    Respects the video-job semaphore, so it waits if other videos are
    already processing.
    """
    _validate_video(video.filename, video.size or 0)
    job_id, video_path = _new_video_job(video)
    try:
        await _save_upload(video, video_path)
    except HTTPException:
        JOBS.pop(job_id, None)
        raise

    result = await _run_pipeline_gated(job_id, video_path)
    if result is None:
        return _error(500, JOBS[job_id]["message"] or "Video processing failed")
    return _video_response(job_id, result)


@app.post("/predict-video/async", response_model=JobStatus)
async def predict_video_async(
    video: UploadFile = File(..., description="Video file (.mp4, .mov, .avi, .mkv, .webm)"),
):
    """Upload a video for **asynchronous** annotation.

    Returns a ``job_id`` immediately.  Poll ``/status/{job_id}``, then
    download from ``/download/{job_id}``.
    """
    _validate_video(video.filename, video.size or 0)
    job_id, video_path = _new_video_job(video)
    try:
        await _save_upload(video, video_path)
    except HTTPException:
        JOBS.pop(job_id, None)
        raise

    # create_task rather than BackgroundTasks: the semaphore wrapper is a
    # coroutine and must be awaited on the loop, not run in the thread pool.
    asyncio.create_task(_run_pipeline_gated(job_id, video_path))
    log.info("Job %s: queued (%s)", job_id, video.filename)
    return _job_status(job_id)


@app.get("/status/{job_id}", response_model=JobStatus)
async def get_status(job_id: str):
    if job_id not in JOBS:
        raise HTTPException(404, "Job not found")
    return _job_status(job_id)


@app.get("/download/{job_id}")
async def download_video(job_id: str):
    """Download the annotated video."""
    _require_completed(job_id)
    p = JOBS[job_id]["_result"].output_video
    if not p.exists():
        raise HTTPException(404, "Annotated video not found")
    return FileResponse(str(p), media_type="video/mp4", filename=f"annotated_{job_id}.mp4")


@app.get("/download/{job_id}/csv")
async def download_csv(job_id: str):
    """Download the per-frame counts as CSV."""
    _require_completed(job_id)
    p = JOBS[job_id]["_result"].csv_path
    if p is None or not p.exists():
        raise HTTPException(404, "CSV not found")
    return FileResponse(str(p), media_type="text/csv", filename=f"frames_{job_id}.csv")


@app.get("/download/{job_id}/frames/{number}")
async def download_frame(job_id: str, number: int):
    """Download one annotated frame (1-based)."""
    _require_completed(job_id)
    frames = JOBS[job_id]["_result"].frames
    if not 1 <= number <= len(frames) or frames[number - 1].annotated_path is None:
        raise HTTPException(404, "Frame not found")
    return FileResponse(str(frames[number - 1].annotated_path), media_type="image/jpeg")


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    """Delete a job and all its artefacts."""
    if job_id not in JOBS:
        raise HTTPException(404, "Job not found")
    _cleanup_job(job_id)
    return {"detail": "deleted"}


@app.get("/health")
async def health():
    """Liveness probe with live-queue and video-job occupancy."""
    return {
        "status": "healthy",
        "inference_configured": bool(ROBOFLOW_ENDPOINT and ROBOFLOW_API_KEY),
        "live": _scheduler.stats() if _scheduler else None,
        "last_alert": _last_alert,
        "viewers": len(_viewers),
        "active_jobs": sum(1 for j in JOBS.values()
                           if j["status"] not in (JobStage.PENDING, JobStage.COMPLETED, JobStage.FAILED)),
        "queued_jobs": sum(1 for j in JOBS.values() if j["status"] == JobStage.PENDING),
        "total_jobs": len(JOBS),
        "max_concurrent_video_jobs": MAX_CONCURRENT_VIDEO_JOBS,
        "video_slots_available": _video_semaphore._value if _video_semaphore else 0,
    }


@app.get("/")
async def root():
    """Service info and endpoint index."""
    return {
        "service": "Crowd Count API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "WS /ws": "Live feed (frame, updateThreshold)",
            "POST /predict": "Annotate one image",
            "GET /uploads/{name}": "Stored image upload",
            "POST /predict-video": "Sync video annotation (returns envelope)",
            "POST /predict-video/async": "Async video annotation (returns job_id)",
            "GET /status/{job_id}": "Poll progress",
            "GET /download/{job_id}": "Annotated video",
            "GET /download/{job_id}/csv": "Per-frame CSV",
            "GET /download/{job_id}/frames/{n}": "Annotated frame",
            "DELETE /jobs/{job_id}": "Cleanup artefacts",
            "GET /health": "Liveness probe",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
