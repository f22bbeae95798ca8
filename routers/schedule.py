import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from models.schemas import GenerateScheduleBody, SchedulingResult, ValidateScheduleBody, ValidationResult
from service.progress import ProgressChannel
from service.scheduling_service import SchedulingService

logger = logging.getLogger(__name__)

# Create a router instance
router = APIRouter()

service = SchedulingService()
executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="scheduling")


@router.post("/schedule/generate", response_model=SchedulingResult)
def generate_schedule(body: GenerateScheduleBody):
    """
    Generate a timetable for one academic term.

    Runs the staged solver against the supplied data snapshot and returns
    the assignments together with statistics, conflicts and suggestions.
    Unplaceable courses are reported as unassigned instead of failing the run.
    """
    return service.execute_scheduling(body.request, body.data)


@router.post("/schedule/generate/stream")
def generate_schedule_stream(body: GenerateScheduleBody):
    """
    Generate a timetable while streaming progress.

    The response is newline-delimited JSON: one ``{"event": "progress", ...}``
    line per progress event, then a single ``{"event": "result", ...}`` line.
    Closing the connection cancels the run.
    """
    channel = ProgressChannel()
    cancel_event = threading.Event()

    def run():
        try:
            return service.execute_scheduling(body.request, body.data, channel, cancel_event)
        finally:
            channel.close()

    future = executor.submit(run)

    def stream():
        try:
            for event in channel.events():
                yield json.dumps({"event": "progress", **event.model_dump()}) + "\n"
            result = future.result()
            yield json.dumps({"event": "result", **result.model_dump(mode="json")}) + "\n"
        finally:
            if not future.done():
                logger.info("Progress stream closed early; cancelling scheduling run")
                cancel_event.set()

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/schedule/validate", response_model=ValidationResult)
def validate_schedule(body: ValidateScheduleBody):
    """
    Check existing schedule records for teacher, room and class collisions.

    Severities follow the conflict policies of the supplied rule set, or
    strict policies when no rule set is given.
    """
    return service.validate_schedule(body.records, body.rules)
