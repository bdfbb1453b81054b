# backend/sitelapse/main.py
import asyncio
import logging
import os
import secrets
from typing import Optional

import aiofiles
from fastapi import Depends, FastAPI, File, Form, Query, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import load_settings
from .errors import InsufficientFrames, NotFound, SitelapseError
from .frames import Tags
from .jobs import JobService, Requester, Selection, VideoEffects, build_service
from .models import PHOTO, READY, VIDEO
from .sampler import SLIDESHOW_DESCRIPTIONS

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 1.0
UPLOAD_CHUNK = 1024 * 1024

settings = load_settings()

app = FastAPI(title="Sitelapse Time-lapse Service")

# --- CORS for development ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # open for dev; lock down in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.archive_backend == "local":
    app.mount("/media", StaticFiles(directory=settings.media_root, check_dir=False), name="media")

_service: Optional[JobService] = None


def get_service() -> JobService:
    global _service
    if _service is None:
        _service = build_service(settings)
    return _service


def _current_service() -> JobService:
    return app.dependency_overrides.get(get_service, get_service)()


@app.on_event("startup")
def startup():
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    interrupted = _current_service().scheduler.recover()
    logger.info("Service started; %d interrupted jobs marked failed", interrupted)


@app.on_event("shutdown")
def shutdown():
    if _service is not None:
        _service.scheduler.shutdown(wait=False)


@app.exception_handler(SitelapseError)
async def sitelapse_error_handler(request: Request, exc: SitelapseError):
    body = {"error": exc.message}
    if isinstance(exc, NotFound) and exc.sides:
        body["missing"] = exc.sides
    if isinstance(exc, InsufficientFrames):
        body["found"] = exc.found
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=body)


# Save uploaded file in chunks (async)
async def save_upload_file(upload_file: UploadFile, destination: str):
    os.makedirs(os.path.dirname(destination), exist_ok=True)
    async with aiofiles.open(destination, "wb") as out_file:
        while True:
            chunk = await upload_file.read(UPLOAD_CHUNK)
            if not chunk:
                break
            await out_file.write(chunk)
    await upload_file.close()


async def _store_upload(upload: Optional[UploadFile], label: str, upload_dir: str) -> Optional[str]:
    if upload is None or not upload.filename:
        return None
    name = f"{label}_{secrets.token_hex(8)}_{os.path.basename(upload.filename)}"
    destination = os.path.join(upload_dir, name)
    await save_upload_file(upload, destination)
    return destination


def _discard(*paths: Optional[str]):
    for path in paths:
        if path and os.path.exists(path):
            os.remove(path)


@app.post("/video-requests", status_code=201)
async def create_video_request(
    owner: str = Form(...),
    collection: str = Form(...),
    device: str = Form(...),
    date1: str = Form(...),
    date2: str = Form(...),
    hour1: str = Form("00"),
    hour2: str = Form("23"),
    variant: str = Form("large"),
    duration: Optional[float] = Form(None),
    frame_rate: Optional[int] = Form(None),
    speed: Optional[str] = Form(None),
    resolution: str = Form("720"),
    show_date: bool = Form(False),
    caption: str = Form(""),
    music: bool = Form(False),
    music_file: str = Form(""),
    contrast: float = Form(1.0),
    brightness: float = Form(0.0),
    saturation: float = Form(1.0),
    requester_id: Optional[str] = Form(None),
    requester_name: Optional[str] = Form(None),
    logo: Optional[UploadFile] = File(None),
    watermark: Optional[UploadFile] = File(None),
    service: JobService = Depends(get_service),
):
    """
    Queue a time-lapse video over the frames in [date1, date2] x [hour1, hour2].

    Optional multipart files ``logo`` and ``watermark`` are overlaid on every frame.
    Returns the job id and how many frames matched.
    """
    selection = Selection(Tags(owner, collection, device), date1, date2, hour1, hour2, variant)
    logo_path = await _store_upload(logo, "logo", service.settings.upload_dir)
    watermark_path = await _store_upload(watermark, "watermark", service.settings.upload_dir)
    effects = VideoEffects(
        duration=duration,
        frame_rate=frame_rate,
        speed=speed,
        resolution=resolution,
        show_date=show_date,
        caption=caption,
        logo_path=logo_path,
        watermark_path=watermark_path,
        music=music,
        music_file=music_file,
        contrast=contrast,
        brightness=brightness,
        saturation=saturation,
    )
    try:
        submission = await run_in_threadpool(
            service.submit_video, selection, effects, Requester(requester_id, requester_name)
        )
    except Exception:
        _discard(logo_path, watermark_path)
        raise
    return submission.as_dict()


@app.post("/photo-requests", status_code=201)
def create_photo_request(
    owner: str = Form(...),
    collection: str = Form(...),
    device: str = Form(...),
    date1: str = Form(...),
    date2: str = Form(...),
    hour1: str = Form("00"),
    hour2: str = Form("23"),
    variant: str = Form("large"),
    requester_id: Optional[str] = Form(None),
    requester_name: Optional[str] = Form(None),
    service: JobService = Depends(get_service),
):
    selection = Selection(Tags(owner, collection, device), date1, date2, hour1, hour2, variant)
    return service.submit_photo(selection, Requester(requester_id, requester_name)).as_dict()


@app.get("/video-requests")
def list_video_requests(service: JobService = Depends(get_service)):
    return service.list_jobs(VIDEO)


@app.get("/photo-requests")
def list_photo_requests(service: JobService = Depends(get_service)):
    return service.list_jobs(PHOTO)


@app.get("/jobs/{job_id}")
def get_job(job_id: str, service: JobService = Depends(get_service)):
    return service.job_record(service.get_job(job_id))


@app.delete("/jobs/{job_id}", status_code=204)
def delete_job(job_id: str, service: JobService = Depends(get_service)):
    if not service.delete_job(job_id):
        raise NotFound(f"Job {job_id} not found")
    return Response(status_code=204)


@app.get("/result/{job_id}")
def result(job_id: str, service: JobService = Depends(get_service)):
    job = service.get_job(job_id)
    if job.status != READY or not job.result_path or not os.path.exists(job.result_path):
        raise NotFound("Result not ready")

    return FileResponse(
        path=job.result_path,
        filename=os.path.basename(job.result_path),
        media_type="video/mp4" if job.kind == VIDEO else "application/zip",
    )


# --- camera queries ---

def _frames_payload(service: JobService, frames) -> dict:
    return {"count": len(frames), "frames": [service.frame_payload(f) for f in frames]}


@app.get("/cameras/{owner}/{collection}/{device}/pictures")
def camera_pictures(
    owner: str,
    collection: str,
    device: str,
    date1: Optional[str] = None,
    date2: Optional[str] = None,
    variant: str = "large",
    service: JobService = Depends(get_service),
):
    """First and last frame of a camera, plus the frames of ``date1`` and ``date2`` when asked."""
    tags = Tags(owner, collection, device)
    first = service.index.first(tags, variant)
    last = service.index.last(tags, variant)
    if first is None and last is None:
        raise NotFound("No pictures found in camera directory")

    date1_photos, date2_photos = [], []
    if date1 or date2:
        day1 = date1 or first.date
        day2 = date2 or last.date
        date1_photos = [f.timestamp for f in service.index.by_date_range(tags, day1, day1, variant)]
        date2_photos = [f.timestamp for f in service.index.by_date_range(tags, day2, day2, variant)]

    return {
        "firstPhoto": first.timestamp if first else None,
        "lastPhoto": last.timestamp if last else None,
        "date1Photos": date1_photos,
        "date2Photos": date2_photos,
        "first": service.frame_payload(first),
        "last": service.frame_payload(last),
    }


@app.get("/cameras/{owner}/{collection}/{device}/available-dates")
def available_dates(owner: str, collection: str, device: str, variant: str = "large",
                    service: JobService = Depends(get_service)):
    dates = service.index.available_dates(Tags(owner, collection, device), variant)
    return {
        "dates": dates,
        "count": len(dates),
        "firstDate": dates[0] if dates else None,
        "lastDate": dates[-1] if dates else None,
    }


@app.get("/cameras/{owner}/{collection}/{device}/range")
def date_range(
    owner: str,
    collection: str,
    device: str,
    date1: str,
    date2: str,
    hour1: Optional[str] = None,
    hour2: Optional[str] = None,
    variant: str = "large",
    service: JobService = Depends(get_service),
):
    tags = Tags(owner, collection, device)
    if hour1 is None and hour2 is None:
        frames = service.index.by_date_range(tags, date1, date2, variant)
    else:
        frames = service.index.select(tags, date1, date2, hour1 or "00", hour2 or "23", variant)
    return _frames_payload(service, frames)


@app.get("/cameras/{owner}/{collection}/{device}/preview")
def weekly_preview(owner: str, collection: str, device: str, variant: str = "large",
                   service: JobService = Depends(get_service)):
    return _frames_payload(service, service.sampler.weekly(Tags(owner, collection, device), variant))


@app.post("/cameras/{owner}/{collection}/{device}/preview-video", status_code=201)
def weekly_preview_video(owner: str, collection: str, device: str, variant: str = "large",
                         service: JobService = Depends(get_service)):
    return service.submit_weekly_preview(Tags(owner, collection, device), variant).as_dict()


@app.get("/cameras/{owner}/{collection}/{device}/slideshow/{range_kind}")
def slideshow(owner: str, collection: str, device: str, range_kind: str, variant: str = "large",
              service: JobService = Depends(get_service)):
    frames = service.sampler.slideshow(Tags(owner, collection, device), range_kind, variant)
    payload = _frames_payload(service, frames)
    payload.update(rangeType=range_kind, description=SLIDESHOW_DESCRIPTIONS[range_kind])
    return payload


@app.get("/cameras/{owner}/{collection}/{device}/compare")
def compare(
    owner: str,
    collection: str,
    device: str,
    date1: str,
    date2: str,
    time1: Optional[str] = Query(None),
    time2: Optional[str] = Query(None),
    variant: str = "large",
    service: JobService = Depends(get_service),
):
    result = service.sampler.compare(Tags(owner, collection, device), date1, time1, date2, time2, variant)
    return {
        "first": dict(service.frame_payload(result.first), time=result.first_time),
        "second": dict(service.frame_payload(result.second), time=result.second_time),
    }


@app.get("/cameras/{owner}/{collection}/{device}/working-hours")
def working_hours(owner: str, collection: str, device: str, variant: str = "large",
                  service: JobService = Depends(get_service)):
    return _frames_payload(service, service.index.working_hours(Tags(owner, collection, device), variant))


@app.websocket("/render-progress")
async def render_progress(websocket: WebSocket, service: JobService = Depends(get_service)):
    await websocket.accept()
    job_id = websocket.query_params.get("jobId") or websocket.query_params.get("job_id")
    if not job_id:
        await websocket.send_json({"error": "missing jobId query param"})
        await websocket.close(code=1008)
        return

    try:
        while True:
            job = service.store.get(job_id)
            if not job:
                await websocket.send_json({"error": "job_not_found"})
                await websocket.close()
                return

            await websocket.send_json({"progress": job.progress, "status": job.status,
                                       "message": job.progress_message})

            if job.is_terminal:
                await websocket.send_json({"status": job.status, "outputUrl": service.download_url(job),
                                           "error": job.error})
                await websocket.close()
                return

            await asyncio.sleep(PROGRESS_INTERVAL)

    except WebSocketDisconnect:
        logger.info("Progress listener for job %s disconnected", job_id)
