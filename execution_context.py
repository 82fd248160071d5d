# execution_context.py

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from scenario_models import ResponseRecord


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LoopFrame:
    """One iteration of a loop as seen by the variable resolver."""
    variable_name: str
    item: Any = None
    index: int = 0
    total: int = 0
    item_alias: Optional[str] = None
    index_alias: Optional[str] = None
    repeat: int = 0
    iteration: int = 0

    def as_scope(self) -> Dict[str, Any]:
        scope = {
            'item': self.item,
            'index': self.index,
            'total': self.total,
            'repeat': self.repeat,
            'iteration': self.iteration,
        }
        # Aliases never shadow the built-in frame fields
        if self.item_alias and self.item_alias not in scope:
            scope[self.item_alias] = self.item
        if self.index_alias and self.index_alias not in scope:
            scope[self.index_alias] = self.index
        return scope

    @property
    def path_label(self) -> str:
        return f"{self.variable_name}:{self.index}"


@dataclass
class ExecutionContext:
    """Per-run scopes: parameters, stored responses and the loop stack (innermost last)."""
    params: Dict[str, Any] = field(default_factory=dict)
    responses: Dict[str, ResponseRecord] = field(default_factory=dict)
    loop_stack: List[LoopFrame] = field(default_factory=list)
    clock: Callable[[], datetime] = utc_clock

    def innermost_frame(self) -> Optional[LoopFrame]:
        return self.loop_stack[-1] if self.loop_stack else None

    def find_frame(self, variable_name: str) -> Optional[LoopFrame]:
        for frame in reversed(self.loop_stack):
            if frame.variable_name == variable_name:
                return frame
        return None

    @contextmanager
    def loop_scope(self, frame: LoopFrame):
        self.loop_stack.append(frame)
        try:
            yield frame
        finally:
            self.loop_stack.pop()

    def loop_path(self) -> List[str]:
        return [frame.path_label for frame in self.loop_stack]

    def frame_key(self) -> Tuple[Tuple[str, int], ...]:
        """Identifies the current loop iteration at every nesting level."""
        return tuple((frame.variable_name, frame.iteration) for frame in self.loop_stack)

    def store_response(self, step_id: str, alias: Optional[str], record: ResponseRecord):
        self.responses[step_id] = record
        if alias:
            self.responses[alias] = record

    def get_response(self, key: str) -> Optional[ResponseRecord]:
        return self.responses.get(key)
