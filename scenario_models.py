# scenario_models.py

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

# Needed for the discriminated unions
from typing import Annotated

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from scenario_logging import get_logger

logger = get_logger("models")

ExecutionMode = Literal['auto', 'manual', 'delayed', 'bypass']
ComparisonOperator = Literal[
    '==', '!=', '>', '>=', '<', '<=',
    'contains', 'notContains', 'isEmpty', 'isNotEmpty', 'exists',
]
ALLOWED_METHODS = ['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS']
DEFAULT_RETRY_STATUSES = [500, 502, 503, 504]
BRANCH_HANDLE_PREFIX = 'branch_'


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# ---------------------------
# Condition Models
# ---------------------------

class Condition(BaseModel):
    """A single comparison against a parameter or a stored response."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, description="Identifier of the condition (UI bookkeeping)")
    source: Literal['params', 'response'] = Field(..., description="Where 'field' is looked up")
    stepId: Optional[str] = Field(None, description="Step id or response alias; required when source is 'response'")
    field: str = Field(..., description="Path inside the source (e.g. 'data.items[0].id'). Can contain ${variables}.")
    operator: ComparisonOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Expected value; ignored by isEmpty, isNotEmpty and exists. Can contain ${variables}.")

    @model_validator(mode='after')
    def check_response_step(self) -> 'Condition':
        if self.source == 'response' and not self.stepId:
            raise ValueError(f"Condition on field '{self.field}' uses source 'response' but has no stepId")
        return self


class ConditionGroup(BaseModel):
    """AND/OR combination of conditions, nestable."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    operator: Literal['AND', 'OR'] = Field(..., description="Logical operator combining 'conditions'")
    conditions: List[Union["ConditionGroup", Condition]] = Field(default_factory=list)


ConditionGroup.model_rebuild()

ConditionExpression = Union[ConditionGroup, Condition]


class Branch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: f"branch_{uuid.uuid4().hex[:8]}")
    condition: Optional[ConditionExpression] = None
    nextStepId: str = Field("", description="Target step id; empty means terminal")
    isDefault: bool = False
    label: Optional[str] = None
    handlesFailure: bool = Field(False, description="Taken when the owning request step fails, instead of halting the run")


def _check_single_default(step_id: str, branches: List[Branch]):
    defaults = [b.id for b in branches if b.isDefault]
    if len(defaults) > 1:
        raise ValueError(f"Step '{step_id}' has more than one default branch: {defaults}")


# ---------------------------
# Loop Models
# ---------------------------

class BaseLoop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    maxIterations: Optional[int] = Field(None, ge=0, description="Safety cap for this loop")


class ForEachLoop(BaseLoop):
    type: Literal['forEach'] = 'forEach'
    source: str = Field(..., description="Path ('params.list') or template ('${response.list.data}') resolving to an array")
    itemAlias: str = Field("item", description="Extra name for the current item under loop.* / loops.<name>.*")
    indexAlias: Optional[str] = Field(None, description="Extra name for the current index")
    countField: Optional[str] = Field(None, description="Field of each item giving how many times that item repeats")


class CountLoop(BaseLoop):
    type: Literal['count'] = 'count'
    count: Union[int, str] = Field(..., description="Iteration count or an expression like '${params.count}'")


class WhileLoop(BaseLoop):
    type: Literal['while'] = 'while'
    condition: ConditionExpression = Field(..., description="Evaluated before every iteration")


LoopSpec = Annotated[
    Union[ForEachLoop, CountLoop, WhileLoop],
    Field(discriminator='type')
]


# ---------------------------
# Step Models
# ---------------------------

class StepHeader(BaseModel):
    key: str
    value: str = ""
    enabled: bool = True


class RetryConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    maxRetries: int = Field(0, ge=0)
    retryDelayMs: int = Field(1000, ge=0)
    retryOn: List[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_STATUSES),
        validation_alias=AliasChoices('retryOn', 'retryOnStatus'),
        description="HTTP statuses that trigger a retry",
    )
    retryOnTimeout: bool = Field(False, description="Also retry when the request times out")


class BaseStep(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the step")
    name: str = Field("", description="Human-readable name for the step")
    description: Optional[str] = None
    executionMode: ExecutionMode = 'auto'
    delayMs: Optional[int] = Field(None, ge=0, description="Delay before execution when executionMode is 'delayed'")
    condition: Optional[ConditionExpression] = Field(None, description="Pre-condition gating execution")
    nextStepId: Optional[str] = Field(None, description="Plain successor; folded from the scenario edges when absent")

    @property
    def label(self) -> str:
        return f"'{self.name}' ({self.id})" if self.name else f"({self.id})"


class RequestStep(BaseStep):
    type: Literal['request'] = 'request'
    serverRef: str = Field(..., validation_alias=AliasChoices('serverRef', 'serverId'), description="Server id or name")
    method: str = Field("GET", description="HTTP method")
    endpoint: str = Field(..., description="Endpoint path or absolute URL. Can contain ${variables}.")
    headers: List[StepHeader] = Field(default_factory=list)
    body: Optional[Any] = Field(None, description="JSON object/array or raw string. Can contain ${variables}.")
    queryParams: Optional[Dict[str, Any]] = None
    waitForResponse: bool = True
    saveResponse: bool = True
    responseAlias: Optional[str] = None
    timeoutMs: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices('timeoutMs', 'timeout'))
    retryConfig: Optional[RetryConfig] = None
    acceptStatus: List[int] = Field(default_factory=list, description="Non-2xx statuses treated as success")
    onFailure: Optional[Literal['stop', 'continue']] = Field(None, description="Overrides the run failure policy for this step")
    branches: List[Branch] = Field(default_factory=list)

    @field_validator('method')
    def validate_method(cls, v):
        method_upper = v.upper()
        if method_upper not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {ALLOWED_METHODS}, got '{v}'")
        return method_upper

    @model_validator(mode='after')
    def check_branches(self) -> 'RequestStep':
        _check_single_default(self.id, self.branches)
        return self


class ConditionStep(BaseStep):
    type: Literal['condition'] = 'condition'
    branches: List[Branch] = Field(default_factory=list)

    @model_validator(mode='after')
    def check_branches(self) -> 'ConditionStep':
        _check_single_default(self.id, self.branches)
        if not self.branches:
            logger.warning(f"Condition step {self.label} has no branches; it will always end its path.")
        return self


class LoopStep(BaseStep):
    type: Literal['loop'] = 'loop'
    loop: LoopSpec
    stepIds: List[str] = Field(default_factory=list, description="Child steps executed once per iteration, in order")
    variableName: Optional[str] = Field(None, description="Scope key for loops.<variableName>.*; defaults to the step id")
    maxIterations: Optional[int] = Field(None, ge=0)

    @model_validator(mode='after')
    def default_variable_name(self) -> 'LoopStep':
        if not self.variableName:
            self.variableName = self.id
        return self

    @property
    def effective_max_iterations(self) -> Optional[int]:
        if self.maxIterations is not None:
            return self.maxIterations
        return self.loop.maxIterations


class GroupStep(BaseStep):
    type: Literal['group'] = 'group'
    stepIds: List[str] = Field(default_factory=list)
    collapsed: Optional[bool] = None


Step = Annotated[
    Union[RequestStep, ConditionStep, LoopStep, GroupStep],
    Field(discriminator='type')
]


def step_branches(step) -> List[Branch]:
    if isinstance(step, (RequestStep, ConditionStep)):
        return step.branches
    return []


# ---------------------------
# Parameter Schema
# ---------------------------

class ParameterRules(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[List[Any]] = None


class ParameterSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str
    type: Literal['string', 'number', 'boolean', 'object', 'array', 'any'] = 'any'
    required: bool = False
    defaultValue: Any = None
    description: Optional[str] = None
    itemSchema: Optional["ParameterSchema"] = None
    properties: Optional[List["ParameterSchema"]] = None
    validation: Optional[ParameterRules] = None


ParameterSchema.model_rebuild()


# ---------------------------
# Scenario
# ---------------------------

class Edge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    sourceStepId: str
    targetStepId: str = ""
    sourceHandle: Optional[str] = None
    label: Optional[str] = None

    @property
    def is_branch_edge(self) -> bool:
        return bool(self.sourceHandle and self.sourceHandle.startswith(BRANCH_HANDLE_PREFIX))


class Scenario(BaseModel):
    """
    Scenario graph. Steps own their successors (nextStepId) and branches; the
    'edges' list is folded into nextStepId once at load time.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    version: str = "1.0.0"
    startStepId: str
    steps: List[Step] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    parameterSchema: List[ParameterSchema] = Field(default_factory=list)

    _index: Dict[str, Any] = PrivateAttr(default_factory=dict)

    @model_validator(mode='after')
    def link_steps(self) -> 'Scenario':
        index: Dict[str, Any] = {}
        for step in self.steps:
            if step.id in index:
                raise ValueError(f"Duplicate step id '{step.id}'")
            index[step.id] = step

        if self.startStepId not in index:
            raise ValueError(f"startStepId '{self.startStepId}' does not reference an existing step")

        # Fold plain edges into step-owned successors
        folded: Dict[str, str] = {}
        for edge in self.edges:
            if edge.sourceStepId not in index:
                raise ValueError(f"Edge '{edge.id}' starts at unknown step '{edge.sourceStepId}'")
            if edge.targetStepId and edge.targetStepId not in index:
                raise ValueError(f"Edge '{edge.id}' targets unknown step '{edge.targetStepId}'")
            if edge.is_branch_edge:
                continue
            previous = folded.get(edge.sourceStepId)
            if previous is not None and previous != edge.targetStepId:
                raise ValueError(
                    f"Step '{edge.sourceStepId}' has more than one non-branch edge "
                    f"('{previous}' and '{edge.targetStepId}')"
                )
            folded[edge.sourceStepId] = edge.targetStepId

        for source_id, target_id in folded.items():
            step = index[source_id]
            if step.nextStepId is None:
                step.nextStepId = target_id or None
            elif step.nextStepId != target_id:
                logger.debug(f"Step '{source_id}' declares nextStepId '{step.nextStepId}'; ignoring edge to '{target_id}'.")

        for step in self.steps:
            refs = []
            if step.nextStepId:
                refs.append(('nextStepId', step.nextStepId))
            refs.extend(('branch', b.nextStepId) for b in step_branches(step) if b.nextStepId)
            if isinstance(step, (LoopStep, GroupStep)):
                refs.extend(('stepIds', child) for child in step.stepIds)
            for kind, ref in refs:
                if ref not in index:
                    raise ValueError(f"Step '{step.id}' {kind} references unknown step '{ref}'")

        self._index = index
        return self

    def get_step(self, step_id: str):
        return self._index.get(step_id)

    def derive_edges(self) -> List[Edge]:
        """Edge-list view of the step-owned topology, for visualization."""
        edges: List[Edge] = []
        for step in self.steps:
            if step.nextStepId:
                edges.append(Edge(
                    id=f"edge_{step.id}_{step.nextStepId}",
                    sourceStepId=step.id,
                    targetStepId=step.nextStepId,
                ))
            for branch in step_branches(step):
                if not branch.nextStepId:
                    continue
                edges.append(Edge(
                    id=f"edge_{step.id}_{branch.id}",
                    sourceStepId=step.id,
                    targetStepId=branch.nextStepId,
                    sourceHandle=f"{BRANCH_HANDLE_PREFIX}{branch.id}",
                    label=branch.label,
                ))
        return edges


# ---------------------------
# Servers
# ---------------------------

class Server(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    name: str
    baseUrl: str
    headers: List[StepHeader] = Field(default_factory=list)
    timeoutMs: int = Field(30000, ge=0, validation_alias=AliasChoices('timeoutMs', 'timeout'))

    @field_validator('baseUrl')
    def validate_base_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"baseUrl must be an absolute http(s) URL, got '{v}'")
        return v


# ---------------------------
# Execution Records
# ---------------------------

class StepState(str, Enum):
    PENDING = "PENDING"
    WAITING_FOR_INPUT = "WAITING_FOR_INPUT"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_STATES = {StepState.SUCCESS, StepState.FAILED, StepState.SKIPPED}


class RunOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepError(BaseModel):
    code: str
    message: str
    details: Any = None


class RequestSnapshot(BaseModel):
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    queryParams: Optional[Dict[str, Any]] = None


class ResponseRecord(BaseModel):
    status: int
    statusText: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    data: Any = None
    durationMs: float = 0.0


class StepExecutionRecord(BaseModel):
    recordId: str = Field(default_factory=lambda: uuid.uuid4().hex)
    stepId: str
    stepName: str = ""
    stepType: str
    state: StepState = StepState.PENDING
    startedAt: Optional[str] = None
    endedAt: Optional[str] = None
    request: Optional[RequestSnapshot] = None
    response: Optional[ResponseRecord] = None
    error: Optional[StepError] = None
    warnings: List[str] = Field(default_factory=list)
    attempts: Optional[int] = None
    iterations: Optional[int] = None
    currentIteration: Optional[int] = None
    selectedBranchId: Optional[str] = None
    loopPath: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: StepState, **changes) -> 'StepExecutionRecord':
        """Moves the record to 'state'. Terminal records are immutable."""
        if self.is_terminal:
            raise RuntimeError(f"Record for step '{self.stepId}' is already {self.state.value}; cannot move to {state.value}")
        for key, value in changes.items():
            setattr(self, key, value)
        self.state = state
        if state in (StepState.IN_PROGRESS, StepState.WAITING_FOR_INPUT) and not self.startedAt:
            self.startedAt = utc_now_iso()
        if state in TERMINAL_STATES:
            if not self.startedAt:
                self.startedAt = utc_now_iso()
            self.endedAt = utc_now_iso()
        return self

    def update_progress(self, **changes) -> 'StepExecutionRecord':
        """Updates informational fields (iteration counters, warnings) of a live record."""
        if self.is_terminal:
            raise RuntimeError(f"Record for step '{self.stepId}' is already {self.state.value}")
        for key, value in changes.items():
            setattr(self, key, value)
        return self


class ExecutionLog(BaseModel):
    """One entry of the per-run execution log."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = Field(default_factory=utc_now_iso)
    level: Literal['debug', 'info', 'warn', 'error'] = 'info'
    stepId: Optional[str] = None
    message: str
    data: Optional[Any] = None


class ExecutionResult(BaseModel):
    runId: str
    scenarioId: Optional[str] = None
    outcome: RunOutcome
    records: List[StepExecutionRecord] = Field(default_factory=list)
    responses: Dict[str, ResponseRecord] = Field(default_factory=dict)
    startedAt: str
    endedAt: Optional[str] = None
    error: Optional[StepError] = None
    logs: List[ExecutionLog] = Field(default_factory=list)


# ---------------------------
# Configuration Models
# ---------------------------

class ExecutorConfig(BaseModel):
    """Runtime configuration for ScenarioExecutor."""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        alias_generator=lambda field_name: {
            'stop_on_failure': 'Stop On Failure',
            'default_timeout_ms': 'Default Timeout MS',
            'max_loop_iterations': 'Max Loop Iterations',
            'max_step_executions': 'Max Step Executions',
            'step_mode_overrides': 'Step Mode Overrides',
            'debug': 'Debug',
        }.get(field_name, field_name),
    )

    stop_on_failure: bool = Field(default=True, description="Halt the run when a step fails (unless the step says otherwise)")
    default_timeout_ms: int = Field(default=30000, ge=0, description="Request timeout when neither step nor server sets one")
    max_loop_iterations: int = Field(default=10000, ge=1, description="Safety ceiling for loops without maxIterations")
    max_step_executions: int = Field(default=10000, ge=1, description="Guard against cyclic graphs: executions of one step within one loop iteration")
    step_mode_overrides: Dict[str, ExecutionMode] = Field(default_factory=dict, description="stepId -> executionMode for this run")
    debug: bool = Field(default=False, description="Enable debug logging")


class StartRunRequest(BaseModel):
    scenario: Scenario
    servers: List[Server] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)
    config: ExecutorConfig = Field(default_factory=ExecutorConfig)
