# loop_processor.py

from typing import Any, Callable, Iterator, Optional

from condition_evaluator import evaluate, to_number
from execution_context import ExecutionContext, LoopFrame
from scenario_errors import LoopSafetyError
from scenario_logging import get_logger
from scenario_models import CountLoop, ForEachLoop, LoopStep, WhileLoop
from variable_resolver import MISSING, resolve_reference, resolve_string

logger = get_logger("loops")

DEFAULT_MAX_ITERATIONS = 10000

WarningCallback = Callable[[str], None]


def _emit(on_warning: Optional[WarningCallback], message: str):
    logger.warning(message)
    if on_warning:
        on_warning(message)


def _repeat_count(item: Any, count_field: Optional[str]) -> int:
    if not count_field or not isinstance(item, dict):
        return 1
    number = to_number(item.get(count_field))
    if number is None or number < 1:
        return 1
    return int(number)


def _count_value(raw: Any, ctx: ExecutionContext, on_warning: Optional[WarningCallback]) -> int:
    value = resolve_string(raw, ctx) if isinstance(raw, str) else raw
    number = to_number(value)
    if number is None:
        _emit(on_warning, f"Loop count '{raw}' is not numeric; running zero iterations.")
        return 0
    return max(int(number), 0)


def iterate(
    step: LoopStep,
    ctx: ExecutionContext,
    on_warning: Optional[WarningCallback] = None,
    default_max: int = DEFAULT_MAX_ITERATIONS,
) -> Iterator[LoopFrame]:
    """
    Lazily yields one LoopFrame per iteration of 'step'.

    Frames are produced on demand so that While conditions and ForEach
    sources see the effects of earlier iterations. The sequence stops at the
    iteration cap with a LoopSafetyError warning.
    """
    loop = step.loop
    cap = step.effective_max_iterations
    if cap is None:
        cap = default_max
    name = step.variableName
    produced = 0

    def cap_reached() -> bool:
        if produced >= cap:
            _emit(on_warning, str(LoopSafetyError(step.id, cap)))
            return True
        return False

    if isinstance(loop, ForEachLoop):
        items = resolve_reference(loop.source, ctx)
        if not isinstance(items, list):
            found = 'nothing' if items is MISSING or items is None else type(items).__name__
            _emit(on_warning, f"Loop {step.label} source '{loop.source}' did not resolve to an array (got {found}); skipping.")
            return
        total = len(items)
        logger.debug(f"Loop {step.label}: forEach over {total} item(s)")
        for index, item in enumerate(items):
            for repeat in range(_repeat_count(item, loop.countField)):
                if cap_reached():
                    return
                yield LoopFrame(
                    variable_name=name,
                    item=item,
                    index=index,
                    total=total,
                    item_alias=loop.itemAlias,
                    index_alias=loop.indexAlias,
                    repeat=repeat,
                    iteration=produced,
                )
                produced += 1

    elif isinstance(loop, CountLoop):
        count = _count_value(loop.count, ctx, on_warning)
        logger.debug(f"Loop {step.label}: count {count}")
        for index in range(count):
            if cap_reached():
                return
            yield LoopFrame(variable_name=name, item=index, index=index, total=count, iteration=produced)
            produced += 1

    elif isinstance(loop, WhileLoop):
        while True:
            warnings = []
            proceed = evaluate(loop.condition, ctx, warnings)
            for message in warnings:
                if on_warning:
                    on_warning(message)
            if not proceed:
                logger.debug(f"Loop {step.label}: while condition false after {produced} iteration(s)")
                return
            if cap_reached():
                return
            yield LoopFrame(variable_name=name, item=produced, index=produced, total=produced + 1, iteration=produced)
            produced += 1
