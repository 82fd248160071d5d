# scenario_control.py

import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from parameter_validation import validate_parameters
from run_control import RunControl
from scenario_errors import ParameterValidationError
from scenario_executor import ScenarioExecutor
from scenario_logging import configure_logging, get_logger
from scenario_models import ExecutionResult, StartRunRequest, StepExecutionRecord

logger = get_logger("api")


# ------------------------------------------------------
# Run Registry
# ------------------------------------------------------
@dataclass
class RunHandle:
    run_id: str
    executor: ScenarioExecutor
    control: RunControl
    params: Dict[str, Any] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    status: str = 'running'  # 'running' | 'completed' | 'failed' | 'cancelled' | 'error'
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'))

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


runs: Dict[str, RunHandle] = {}
started_at = time.monotonic()


async def _run_in_background(handle: RunHandle):
    try:
        handle.result = await handle.executor.run(handle.params)
        handle.status = handle.result.outcome.value.lower()
    except asyncio.CancelledError:
        handle.status = 'cancelled'
        logger.info(f"Run {handle.run_id}: task cancelled.")
        raise
    except ParameterValidationError as e:
        handle.status = 'failed'
        handle.error = e.message
        logger.error(f"Run {handle.run_id}: {e.message}")
    except Exception as e:
        handle.status = 'error'
        handle.error = str(e)
        logger.error(f"Run {handle.run_id}: unexpected error: {e}", exc_info=True)


async def _cancel_all_runs():
    active = [handle for handle in runs.values() if handle.active]
    if not active:
        return
    logger.info(f"Cancelling {len(active)} active run(s)...")
    for handle in active:
        handle.control.cancel()
    await asyncio.gather(*(handle.task for handle in active), return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await _cancel_all_runs()


app = FastAPI(lifespan=lifespan)


def _get_run(run_id: str) -> RunHandle:
    handle = runs.get(run_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return handle


def _dump_records(records: List[StepExecutionRecord]) -> List[dict]:
    return [record.model_dump(mode='json') for record in records]


# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "active_runs": sum(1 for handle in runs.values() if handle.active),
    })


@app.post('/api/runs')
async def start_run(data: dict):
    """
    Start a scenario run: { "scenario": {...}, "servers": [...], "params": {...}, "config": {...} }.
    The run executes in the background; poll GET /api/runs/{runId} for records.
    """
    try:
        start_req = StartRunRequest(**data)
    except ValidationError as ve:
        logger.error(f"Run request validation failed: {ve}")
        raise HTTPException(status_code=400, detail=json.loads(ve.json()))

    try:
        params = validate_parameters(start_req.scenario.parameterSchema, start_req.params)
    except ParameterValidationError as pe:
        return JSONResponse(status_code=422, content={
            "message": pe.message,
            "violations": pe.details,
        })

    if start_req.config.debug:
        configure_logging(True)

    run_id = uuid.uuid4().hex
    control = RunControl()
    executor = ScenarioExecutor(
        start_req.scenario,
        start_req.servers,
        config=start_req.config,
        control=control,
        run_id=run_id,
    )
    handle = RunHandle(run_id=run_id, executor=executor, control=control, params=params)
    runs[run_id] = handle
    handle.task = asyncio.create_task(_run_in_background(handle))
    logger.info(f"Run {run_id} started for scenario '{start_req.scenario.name}'.")
    return JSONResponse({"runId": run_id, "status": handle.status})


@app.get('/api/runs/{run_id}')
async def get_run(run_id: str):
    handle = _get_run(run_id)
    result = handle.result
    return JSONResponse({
        "runId": run_id,
        "status": handle.status,
        "outcome": result.outcome.value if result else None,
        "currentStepId": handle.executor.current_step_id,
        "waitingStepId": handle.control.waiting_step_id,
        "records": _dump_records(handle.executor.records),
        "logs": [entry.model_dump(mode='json') for entry in handle.executor.logs],
        "error": result.error.model_dump(mode='json') if result and result.error else handle.error,
        "createdAt": handle.created_at,
    })


@app.get('/api/runs/{run_id}/responses')
async def get_run_responses(run_id: str):
    handle = _get_run(run_id)
    return JSONResponse({
        key: record.model_dump(mode='json')
        for key, record in handle.executor.context.responses.items()
    })


class StepSignal(BaseModel):
    stepId: Optional[str] = None


@app.post('/api/runs/{run_id}/resume')
async def resume_run(run_id: str, payload: Optional[StepSignal] = None):
    handle = _get_run(run_id)
    step_id = payload.stepId if payload else None
    if not handle.control.resume(step_id):
        raise HTTPException(status_code=409, detail="No matching step is waiting for input")
    return JSONResponse({"message": "Step resumed", "stepId": step_id})


@app.post('/api/runs/{run_id}/skip')
async def skip_step(run_id: str, payload: Optional[StepSignal] = None):
    handle = _get_run(run_id)
    step_id = payload.stepId if payload else None
    if not handle.control.skip(step_id):
        raise HTTPException(status_code=409, detail="No matching step is waiting for input")
    return JSONResponse({"message": "Step skipped", "stepId": step_id})


@app.post('/api/runs/{run_id}/cancel')
async def cancel_run(run_id: str):
    handle = _get_run(run_id)
    if not handle.active:
        return JSONResponse({"message": f"Run is not active (status={handle.status})."})
    handle.control.cancel()
    return JSONResponse({"message": "Cancellation requested."})


@app.get('/api/metrics')
async def api_metrics():
    """Process/system stats plus run counters."""
    container_cpu_percent = psutil.cpu_percent(interval=0.1)
    container_mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()

    by_status: Dict[str, int] = {}
    for handle in runs.values():
        by_status[handle.status] = by_status.get(handle.status, 0) + 1

    return JSONResponse({
        "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        "uptime_seconds": round(time.monotonic() - started_at, 1),
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv
        },
        "system": {
            "cpu_percent": round(container_cpu_percent, 1),
            "memory_percent": round(container_mem.percent, 1),
            "memory_available_mb": round(container_mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(container_mem.used / (1024 * 1024), 2)
        },
        "runs": {
            "total": len(runs),
            "active": sum(1 for handle in runs.values() if handle.active),
            "by_status": by_status,
        },
    })


# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    logging.Formatter.converter = time.gmtime
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.info("Starting scenario control API server...")

    import uvicorn
    uvicorn.run(
        "scenario_control:app",
        host='0.0.0.0',
        port=int(os.environ.get("PORT", "8080")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
