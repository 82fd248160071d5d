# scenario_executor.py

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import aiohttp

from condition_evaluator import evaluate
from execution_context import ExecutionContext
from http_step_runner import HttpStepRunner, ResolvedRequest, build_url, merge_headers
from loop_processor import iterate
from parameter_validation import validate_parameters
from run_control import SKIP, RunControl
from scenario_errors import HttpStepError, RunCancelledError, ScenarioError
import scenario_logging
from scenario_logging import RunLogHandler, configure_logging, current_run_id, current_step_id, get_logger
from scenario_models import (
    Branch,
    ConditionStep,
    ExecutionLog,
    ExecutionResult,
    ExecutorConfig,
    GroupStep,
    LoopStep,
    RequestStep,
    RunOutcome,
    Scenario,
    Server,
    StepError,
    StepExecutionRecord,
    StepState,
    step_branches,
    utc_now_iso,
)
from variable_resolver import render, resolve

logger = get_logger("executor")

RecordCallback = Callable[[StepExecutionRecord], None]
LogCallback = Callable[[ExecutionLog], None]

LOG_LEVELS = {
    logging.DEBUG: 'debug',
    logging.INFO: 'info',
    logging.WARNING: 'warn',
}


def to_step_error(error: ScenarioError) -> StepError:
    """Serialized form of an error for execution records."""
    data = error.to_dict()
    code = data.pop('code')
    message = data.pop('message')
    details = data.pop('details', None)
    if data:
        # Error-specific fields such as HTTP kind/status
        extra = details if isinstance(details, dict) else ({} if details is None else {'details': details})
        details = {**data, **extra}
    return StepError(code=code, message=message, details=details)


class _RunHalted(Exception):
    """Raised when the failure policy stops the run."""

    def __init__(self, error: StepError):
        super().__init__(error.message)
        self.error = error


class ScenarioExecutor:
    """
    Walks a scenario graph once: resolves variables, evaluates conditions,
    expands loops and dispatches HTTP requests, keeping one execution record
    per step execution.
    """

    def __init__(
        self,
        scenario: Scenario,
        servers: List[Server],
        *,
        session: Optional[aiohttp.ClientSession] = None,
        config: Optional[ExecutorConfig] = None,
        on_record: Optional[RecordCallback] = None,
        on_log: Optional[LogCallback] = None,
        control: Optional[RunControl] = None,
        run_id: Optional[str] = None,
    ):
        self.scenario = scenario
        self.servers = list(servers or [])
        self.session = session
        self.config = config or ExecutorConfig()
        self.on_record = on_record
        self.on_log = on_log
        self.control = control or RunControl()
        self.run_id = run_id or uuid.uuid4().hex

        self.records: List[StepExecutionRecord] = []
        self.logs: List[ExecutionLog] = []
        self.context = ExecutionContext()
        self.current_step_id: Optional[str] = None
        self._step_executions: Dict[Tuple[str, Tuple[Tuple[str, int], ...]], int] = {}
        self._background: Set[asyncio.Task] = set()
        self._http: Optional[HttpStepRunner] = None

        if self.config.debug:
            configure_logging(True)

    # ---------------------------
    # Session Handling
    # ---------------------------

    def create_session(self) -> aiohttp.ClientSession:
        """Creates a ClientSession; per-request timeouts are applied by HttpStepRunner."""
        timeout = aiohttp.ClientTimeout(total=None, connect=10)
        return aiohttp.ClientSession(timeout=timeout)

    # ---------------------------
    # Run
    # ---------------------------

    async def run(self, params: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """
        Executes the scenario and returns its result.

        Everything logged on behalf of the run (including background requests)
        is collected into the result's execution log. Raises
        ParameterValidationError before the first step when params do not
        satisfy the scenario parameter schema.
        """
        run_token = current_run_id.set(self.run_id)
        log_handler = RunLogHandler(self.run_id, self._collect_log, logging.DEBUG if self.config.debug else logging.INFO)
        scenario_logging.logger.addHandler(log_handler)
        try:
            return await self._run(params)
        finally:
            scenario_logging.logger.removeHandler(log_handler)
            current_run_id.reset(run_token)

    async def _run(self, params: Optional[Dict[str, Any]]) -> ExecutionResult:
        validated = validate_parameters(self.scenario.parameterSchema, params)
        self.context = ExecutionContext(params=validated)
        started_at = utc_now_iso()
        run_start = time.monotonic()
        logger.info(f"Run {self.run_id}: starting scenario '{self.scenario.name}' at step '{self.scenario.startStepId}'")

        owns_session = self.session is None
        session = self.create_session() if owns_session else self.session
        self._http = HttpStepRunner(session)

        outcome = RunOutcome.COMPLETED
        run_error: Optional[StepError] = None
        try:
            try:
                await self._walk_chain(self.scenario.startStepId)
            except RunCancelledError as e:
                outcome = RunOutcome.CANCELLED
                run_error = to_step_error(e)
            except _RunHalted as halt:
                outcome = RunOutcome.FAILED
                run_error = halt.error
            await self._drain_background(cancel=outcome == RunOutcome.CANCELLED)
        finally:
            self.current_step_id = None
            for task in list(self._background):
                task.cancel()
            if owns_session:
                await session.close()

        duration = time.monotonic() - run_start
        log = logger.info if outcome == RunOutcome.COMPLETED else logger.warning
        log(f"Run {self.run_id}: {outcome.value} after {len(self.records)} step execution(s) in {duration:.3f}s")
        return ExecutionResult(
            runId=self.run_id,
            scenarioId=self.scenario.id,
            outcome=outcome,
            records=self.records,
            responses=dict(self.context.responses),
            startedAt=started_at,
            endedAt=utc_now_iso(),
            error=run_error,
            logs=self.logs,
        )

    # ---------------------------
    # Records
    # ---------------------------

    def _collect_log(self, record: logging.LogRecord, step_id: Optional[str]):
        entry = ExecutionLog(
            timestamp=datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z'),
            level=LOG_LEVELS.get(record.levelno, 'error'),
            stepId=step_id,
            message=record.getMessage(),
            data=getattr(record, 'data', None),
        )
        self.logs.append(entry)
        if self.on_log is not None:
            self.on_log(entry)

    def _emit(self, record: StepExecutionRecord):
        if self.on_record is None:
            return
        try:
            self.on_record(record)
        except Exception as e:
            logger.error(f"on_record callback failed for step '{record.stepId}': {e}", exc_info=self.config.debug)

    def _new_record(self, step) -> StepExecutionRecord:
        record = StepExecutionRecord(
            stepId=step.id,
            stepName=step.name,
            stepType=step.type,
            loopPath=self.context.loop_path(),
        )
        self.records.append(record)
        self._emit(record)
        return record

    def _transition(self, record: StepExecutionRecord, state: StepState, **changes):
        record.transition(state, **changes)
        self._emit(record)

    # ---------------------------
    # Graph Walking
    # ---------------------------

    async def _walk_chain(self, step_id: Optional[str]):
        while step_id:
            step_id = await self._execute_step(self.scenario.get_step(step_id))

    async def _walk_children(self, owner, step_ids: List[str]):
        """
        Runs a loop body. Children run in list order; a child routing to a
        sibling jumps to it, a child routing outside the body continues as a
        chain and ends the iteration.
        """
        position = 0
        while position < len(step_ids):
            child = self.scenario.get_step(step_ids[position])
            next_id = await self._execute_step(child)
            if next_id in step_ids:
                position = step_ids.index(next_id)
            elif next_id:
                logger.debug(f"Step {child.label} leaves the body of {owner.label} for '{next_id}'; ending iteration.")
                await self._walk_chain(next_id)
                return
            elif isinstance(child, ConditionStep):
                return
            else:
                position += 1

    def _count_execution(self, step):
        # Counted per loop iteration so large loops are not mistaken for cycles
        key = (step.id, self.context.frame_key())
        count = self._step_executions.get(key, 0) + 1
        self._step_executions[key] = count
        if count > self.config.max_step_executions:
            message = (
                f"Maximum step executions ({self.config.max_step_executions}) exceeded at step "
                f"'{step.id}'; the scenario graph probably contains a cycle."
            )
            logger.error(message)
            raise _RunHalted(StepError(code="MAX_STEP_EXECUTIONS", message=message))

    async def _execute_step(self, step) -> Optional[str]:
        """Executes one step and returns the id of the step to run next (None ends the path)."""
        if self.control.cancelled:
            raise RunCancelledError()
        self._count_execution(step)
        self.current_step_id = step.id
        record = self._new_record(step)
        step_token = current_step_id.set(step.id)

        try:
            # --- Pre-condition ---
            if step.condition is not None and not evaluate(step.condition, self.context, record.warnings):
                logger.info(f"Step {step.label}: pre-condition false, skipping.")
                self._transition(record, StepState.SKIPPED)
                return self._default_successor(step)

            # --- Execution mode ---
            mode = self.config.step_mode_overrides.get(step.id, step.executionMode)
            if mode == 'bypass':
                logger.info(f"Step {step.label}: bypassed.")
                self._transition(record, StepState.SKIPPED)
                return self._default_successor(step)
            if mode == 'manual':
                self._transition(record, StepState.WAITING_FOR_INPUT)
                decision = await self.control.wait_for_input(step.id)
                if decision == SKIP:
                    logger.info(f"Step {step.label}: skipped by user.")
                    self._transition(record, StepState.SKIPPED)
                    return self._default_successor(step)
            elif mode == 'delayed' and step.delayMs:
                logger.debug(f"Step {step.label}: delaying {step.delayMs} ms.")
                await self.control.sleep(step.delayMs / 1000)

            self._transition(record, StepState.IN_PROGRESS)

            if isinstance(step, RequestStep):
                return await self._run_request(step, record)
            if isinstance(step, ConditionStep):
                return self._run_condition(step, record)
            if isinstance(step, LoopStep):
                return await self._run_loop(step, record)
            if isinstance(step, GroupStep):
                return await self._run_group(step, record)
            raise _RunHalted(StepError(code="UNKNOWN_STEP", message=f"Unknown step type {type(step).__name__}"))

        except RunCancelledError as e:
            if not record.is_terminal:
                self._transition(record, StepState.FAILED, error=to_step_error(e))
            raise
        except _RunHalted as halt:
            if not record.is_terminal:
                self._transition(record, StepState.FAILED, error=halt.error)
            raise
        finally:
            current_step_id.reset(step_token)

    # ---------------------------
    # Successors & Failure Policy
    # ---------------------------

    def _default_successor(self, step) -> Optional[str]:
        if step.nextStepId:
            return step.nextStepId
        for branch in step_branches(step):
            if branch.isDefault and not branch.handlesFailure:
                return branch.nextStepId or None
        return None

    def _select_branch(self, step, warnings: List[str]) -> Optional[Branch]:
        """First branch whose condition holds, else the default branch."""
        default = None
        for branch in step_branches(step):
            if branch.handlesFailure:
                continue
            if branch.isDefault:
                default = default or branch
                continue
            if branch.condition is None:
                continue
            if evaluate(branch.condition, self.context, warnings):
                return branch
        return default

    def _finish_failed(self, step, record: StepExecutionRecord, error: ScenarioError, **changes) -> Optional[str]:
        step_error = to_step_error(error)
        failure_branch = next((b for b in step_branches(step) if b.handlesFailure), None)
        self._transition(
            record,
            StepState.FAILED,
            error=step_error,
            selectedBranchId=failure_branch.id if failure_branch else None,
            **changes,
        )
        logger.error(f"Step {step.label} failed: {step_error.message}")

        if failure_branch is not None:
            logger.info(f"Step {step.label}: following failure branch '{failure_branch.id}'.")
            return failure_branch.nextStepId or None

        policy = getattr(step, 'onFailure', None) or ('stop' if self.config.stop_on_failure else 'continue')
        if policy == 'stop':
            raise _RunHalted(step_error)
        return self._default_successor(step)

    # ---------------------------
    # Request Steps
    # ---------------------------

    def _find_server(self, ref: str) -> Optional[Server]:
        for server in self.servers:
            if server.id and server.id == ref:
                return server
        for server in self.servers:
            if server.name == ref:
                return server
        return None

    def _resolve_request(self, step: RequestStep) -> Tuple[ResolvedRequest, Server]:
        server = self._find_server(step.serverRef)
        if server is None:
            raise HttpStepError(f"Server '{step.serverRef}' not found", kind='config')

        endpoint = render(step.endpoint, self.context)
        headers = {
            key: render(value, self.context)
            for key, value in merge_headers(server.headers, step.headers).items()
        }

        body = step.body
        if isinstance(body, str) and body.strip()[:1] in ('{', '['):
            try:
                body = json.loads(body)
            except json.JSONDecodeError:
                logger.debug(f"Step {step.label}: body is not JSON before resolution; resolving as text.")
        body = resolve(body, self.context)
        query = resolve(step.queryParams, self.context) if step.queryParams else None

        request = ResolvedRequest(
            method=step.method,
            url=build_url(server.baseUrl, endpoint),
            headers=headers,
            body=body,
            query_params=query,
        )
        return request, server

    def _timeout_ms(self, step: RequestStep, server: Server) -> int:
        if step.timeoutMs is not None:
            return step.timeoutMs
        return server.timeoutMs or self.config.default_timeout_ms

    async def _run_request(self, step: RequestStep, record: StepExecutionRecord) -> Optional[str]:
        try:
            request, server = self._resolve_request(step)
        except ScenarioError as e:
            return self._finish_failed(step, record, e)

        record.update_progress(request=request.snapshot())
        timeout_ms = self._timeout_ms(step, server)

        if not step.waitForResponse:
            self._send_in_background(step, request, timeout_ms)
            branch = self._select_branch(step, record.warnings)
            self._transition(record, StepState.SUCCESS, selectedBranchId=branch.id if branch else None)
            return self._request_successor(step, branch)

        result = await self._http.execute(
            request,
            retry_config=step.retryConfig,
            timeout_ms=timeout_ms,
            cancel_event=self.control.cancel_event,
            accept_status=step.acceptStatus,
        )
        if result.response is not None and step.saveResponse:
            self.context.store_response(step.id, step.responseAlias, result.response)

        if result.error is not None and result.error.kind == 'cancelled':
            self._transition(record, StepState.FAILED, error=to_step_error(result.error), attempts=result.attempts)
            raise RunCancelledError()

        if result.error is not None:
            return self._finish_failed(step, record, result.error, response=result.response, attempts=result.attempts)

        branch = self._select_branch(step, record.warnings)
        self._transition(
            record,
            StepState.SUCCESS,
            response=result.response,
            attempts=result.attempts,
            selectedBranchId=branch.id if branch else None,
        )
        return self._request_successor(step, branch)

    def _request_successor(self, step: RequestStep, branch: Optional[Branch]) -> Optional[str]:
        if branch is not None:
            return branch.nextStepId or None
        return step.nextStepId

    def _send_in_background(self, step: RequestStep, request: ResolvedRequest, timeout_ms: int):
        async def send():
            result = await self._http.execute(
                request,
                retry_config=step.retryConfig,
                timeout_ms=timeout_ms,
                cancel_event=self.control.cancel_event,
                accept_status=step.acceptStatus,
            )
            if result.response is not None and step.saveResponse:
                self.context.store_response(step.id, step.responseAlias, result.response)
            if result.error is not None:
                logger.warning(
                    f"Step {step.label}: background request failed: {result.error.message}",
                    extra={'data': result.error.to_dict()},
                )

        logger.info(f"Step {step.label}: sending {request.method} {request.url} without waiting for the response.")
        task = asyncio.ensure_future(send())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drain_background(self, cancel: bool = False):
        if not self._background:
            return
        tasks = list(self._background)
        if cancel:
            for task in tasks:
                task.cancel()
        logger.debug(f"Waiting for {len(tasks)} background request(s).")
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Background request raised {type(result).__name__}: {result}")

    # ---------------------------
    # Condition, Loop and Group Steps
    # ---------------------------

    def _run_condition(self, step: ConditionStep, record: StepExecutionRecord) -> Optional[str]:
        branch = self._select_branch(step, record.warnings)
        if branch is None:
            logger.info(f"Step {step.label}: no branch matched; path ends here.")
            self._transition(record, StepState.SUCCESS)
            return None
        logger.info(f"Step {step.label}: branch '{branch.label or branch.id}' selected.")
        self._transition(record, StepState.SUCCESS, selectedBranchId=branch.id)
        return branch.nextStepId or None

    async def _run_loop(self, step: LoopStep, record: StepExecutionRecord) -> Optional[str]:
        iterations = 0
        try:
            for frame in iterate(step, self.context, record.warnings.append, self.config.max_loop_iterations):
                iterations += 1
                record.update_progress(iterations=iterations, currentIteration=frame.iteration)
                self._emit(record)
                logger.debug(f"Loop {step.label}: iteration {frame.iteration} (index {frame.index}, repeat {frame.repeat})")
                with self.context.loop_scope(frame):
                    await self._walk_children(step, step.stepIds)
        except RunCancelledError:
            raise
        except ScenarioError as e:
            return self._finish_failed(step, record, e, iterations=iterations)

        logger.info(f"Loop {step.label}: completed {iterations} iteration(s).")
        self._transition(record, StepState.SUCCESS, iterations=iterations)
        return step.nextStepId

    async def _run_group(self, step: GroupStep, record: StepExecutionRecord) -> Optional[str]:
        for child_id in step.stepIds:
            await self._execute_step(self.scenario.get_step(child_id))
        self._transition(record, StepState.SUCCESS)
        return step.nextStepId
