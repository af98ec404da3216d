import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from autoresearch.config import settings
from autoresearch.core.logging import configure_logging
from autoresearch.errors import (
    AutomationExistsError,
    AutomationNotConfiguredError,
    AutomationNotFoundError,
    DuplicateJobError,
    JobNotFoundError,
    NoteCreationError,
    QuotaExceededError,
    ResearchError,
    TaskNotFoundError,
)
from autoresearch.models.job import ResearchJob
from autoresearch.schemas import (
    AutomationCreateRequest,
    AutomationUpdateRequest,
    CallbackRequest,
    MessageRequest,
    TriggerRequest,
)
from autoresearch.service import ResearchService

configure_logging(settings.LOG_LEVEL, settings.LOG_FILE_PATH)
logger = logging.getLogger(__name__)

service = ResearchService.from_settings()

ERROR_STATUS = {
    TaskNotFoundError: 404,
    JobNotFoundError: 404,
    AutomationNotConfiguredError: 400,
    AutomationNotFoundError: 404,
    AutomationExistsError: 409,
    QuotaExceededError: 429,
    DuplicateJobError: 409,
    NoteCreationError: 500,
}

# Bulky fields left out of API responses
JOB_RESPONSE_EXCLUDE = {"job_data", "raw_research_data"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await service.start()
    try:
        yield
    finally:
        await service.stop()


app = FastAPI(title="autoresearch", lifespan=lifespan)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ResearchError)
async def research_exception_handler(request: Request, exc: ResearchError):
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Add exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception handler caught: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "traceback": str(traceback.format_exc())
        }
    )


def serialize_job(job: ResearchJob) -> dict:
    return job.model_dump(mode="json", exclude=JOB_RESPONSE_EXCLUDE)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/api/research/status")
async def research_status():
    """Whether research is enabled and which providers are configured."""
    return service.status()


@app.post("/api/research/trigger", status_code=202)
async def trigger_research(request: TriggerRequest):
    """Start research for a task."""
    job = await service.trigger_research(
        task_id=request.task_id,
        user_id=request.user_id,
        channel_id=request.channel_id,
        category_id=request.category_id,
        require_automation=request.require_automation,
    )
    return {"job_id": job.job_id, "status": job.status.value, "queue_handle": job.queue_handle}


@app.get("/api/research/jobs")
async def list_jobs(user_id: str, limit: int = Query(50, ge=1, le=200)):
    return {"jobs": [serialize_job(job) for job in service.list_jobs(user_id, limit=limit)]}


@app.get("/api/research/jobs/{job_id}")
async def get_job(job_id: str):
    job = service.get_job(job_id)
    queue_status = service.queue.get_job_status(job.queue_handle) if job.queue_handle else None
    return {"job": serialize_job(job), "queue_status": queue_status}


@app.post("/api/research/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    cancelled = service.cancel_research(job_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Research job {job_id} has already finished")
    return {"job_id": job_id, "cancelled": True}


@app.get("/api/research/quota")
async def get_quota(user_id: str):
    return service.get_quota(user_id)


@app.get("/api/research/queue-stats")
async def queue_stats():
    return service.queue_stats()


@app.post("/api/research/callback")
async def handle_callback(request: CallbackRequest):
    """Relay a clarification button press."""
    return {"handled": await service.handle_callback(request.channel_id, request.data)}


@app.post("/api/research/messages")
async def handle_message(request: MessageRequest):
    """Relay free text; handled only when it answers a "Let me specify..." prompt."""
    return {"handled": await service.handle_text(request.channel_id, request.text)}


@app.get("/api/research/task/{task_id}/notes")
async def get_task_notes(task_id: str):
    notes = service.get_task_notes(task_id)
    return {"notes": [note.model_dump(mode="json") for note in notes]}


@app.get("/api/research/automations")
async def list_automations(user_id: str):
    """All category automations of the user."""
    automations = service.list_automations(user_id)
    return {"automations": [automation.model_dump(mode="json") for automation in automations]}


@app.post("/api/research/automations", status_code=201)
async def create_automation(request: AutomationCreateRequest):
    automation = service.create_automation(**request.model_dump())
    return {"automation": automation.model_dump(mode="json")}


@app.put("/api/research/automations/{automation_id}")
async def update_automation(automation_id: str, request: AutomationUpdateRequest):
    automation = service.update_automation(automation_id, **request.model_dump(exclude_none=True))
    return {"automation": automation.model_dump(mode="json")}


@app.delete("/api/research/automations/{automation_id}")
async def delete_automation(automation_id: str, user_id: str):
    service.delete_automation(automation_id, user_id)
    return {"success": True}
