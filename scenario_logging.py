# scenario_logging.py

import contextvars
import logging
import time

# --- Logging Setup ---
logger = logging.getLogger("ScenarioRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)sZ - %(levelname)s - %(name)s - %(message)s')
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured

SENSITIVE_HEADERS = ('authorization', 'cookie', 'set-cookie', 'x-api-key')

# Run and step the current task is working on; background tasks inherit both
current_run_id: contextvars.ContextVar = contextvars.ContextVar("scenario_run_id", default=None)
current_step_id: contextvars.ContextVar = contextvars.ContextVar("scenario_step_id", default=None)


def get_logger(component: str) -> logging.Logger:
    """Returns a child of the ScenarioRunner logger (e.g. 'ScenarioRunner.http')."""
    return logger.getChild(component)


def configure_logging(debug: bool):
    """Configures the logger level based on the debug flag."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        # Run log handlers keep the level of their own run
        if not isinstance(handler, RunLogHandler):
            handler.setLevel(log_level)
    logger.debug(f"Scenario runner logging level set to {logging.getLevelName(log_level)}")


def mask_headers(headers: dict) -> dict:
    """Masks credential-bearing header values for debug output."""
    return {
        k: ('********' if isinstance(v, str) and v and k.lower() in SENSITIVE_HEADERS else v)
        for k, v in (headers or {}).items()
    }


def preview(value, limit: int = 200) -> str:
    text = repr(value)
    return f"{text[:limit]}{'...' if len(text) > limit else ''}"


class RunLogHandler(logging.Handler):
    """
    Passes records logged on behalf of one run to sink(record, step_id).

    Attach it to the ScenarioRunner logger for the duration of the run; records
    from other runs sharing the process are ignored.
    """

    def __init__(self, run_id: str, sink, level: int = logging.INFO):
        super().__init__(level)
        self.run_id = run_id
        self.sink = sink

    def emit(self, record: logging.LogRecord):
        if current_run_id.get() != self.run_id:
            return
        try:
            self.sink(record, current_step_id.get())
        except Exception:
            self.handleError(record)
