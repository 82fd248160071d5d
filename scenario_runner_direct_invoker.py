import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from run_control import RESUME, SKIP, RunControl
from scenario_errors import ParameterValidationError
from scenario_executor import ScenarioExecutor
from scenario_logging import configure_logging, get_logger
from scenario_models import ExecutionResult, ExecutorConfig, RunOutcome, Scenario, Server, StepExecutionRecord, StepState

logger = get_logger("cli")

EXIT_CODES = {
    RunOutcome.COMPLETED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.CANCELLED: 130,
}
EXIT_VALIDATION_ERROR = 2
YAML_SUFFIXES = (".yaml", ".yml")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a scenario once and print the execution result as JSON")
    parser.add_argument("scenario_file", help="Path to a scenario JSON or YAML file (bare scenario or {scenario, servers, params})")
    parser.add_argument("debug_level", nargs="?", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    parser.add_argument("--servers", dest="servers_file", default=None, help="JSON or YAML file with a list of server definitions")
    parser.add_argument(
        "--server",
        dest="server_overrides",
        action="append",
        default=[],
        metavar="NAME=URL",
        help="Define or override a server base URL (repeatable)",
    )
    parser.add_argument("--params", dest="params_file", default=None, help="JSON or YAML file with parameter values")
    parser.add_argument(
        "--param",
        dest="param_overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Parameter value; VALUE is parsed as JSON when possible (repeatable)",
    )
    parser.add_argument(
        "--continue-on-failure",
        dest="continue_on_failure",
        action="store_true",
        help="Keep walking after a failed step instead of stopping the run",
    )
    parser.add_argument(
        "--manual",
        choices=[RESUME, SKIP],
        default=RESUME,
        help="Automatic answer for steps in manual execution mode",
    )
    return parser.parse_args(argv)


def _split_pair(raw: str, option: str) -> List[str]:
    if "=" not in raw:
        raise ValueError(f"{option} expects NAME=VALUE, got '{raw}'")
    key, value = raw.split("=", 1)
    return [key.strip(), value]


def parse_param_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def load_document(path: str) -> Any:
    """Loads a JSON file, or a YAML file when the suffix is .yaml/.yml."""
    file_path = Path(path)
    text = file_path.read_text(encoding="utf-8")
    if file_path.suffix.lower() in YAML_SUFFIXES:
        return YAML(typ="safe").load(text)
    return json.loads(text)


def build_servers(base: List[Dict[str, Any]], overrides: List[str]) -> List[Server]:
    servers = [Server.model_validate(item) for item in base]
    for raw in overrides:
        name, url = _split_pair(raw, "--server")
        position = next((i for i, s in enumerate(servers) if s.name == name or s.id == name), None)
        if position is not None:
            servers[position] = Server.model_validate({**servers[position].model_dump(), "baseUrl": url})
        else:
            servers.append(Server(id=name, name=name, baseUrl=url))
    return servers


def build_params(base: Dict[str, Any], overrides: List[str]) -> Dict[str, Any]:
    params = dict(base)
    for raw in overrides:
        key, value = _split_pair(raw, "--param")
        params[key] = parse_param_value(value)
    return params


def auto_answer(control: RunControl, decision: str):
    """on_record callback answering WAITING_FOR_INPUT steps once the executor starts waiting."""
    loop = asyncio.get_running_loop()

    def on_record(record: StepExecutionRecord):
        if record.state == StepState.WAITING_FOR_INPUT:
            answer = control.resume if decision == RESUME else control.skip
            loop.call_soon(answer, record.stepId)

    return on_record


async def run_scenario(
    scenario: Scenario,
    servers: List[Server],
    params: Dict[str, Any],
    config: ExecutorConfig,
    manual: str,
) -> ExecutionResult:
    control = RunControl()
    executor = ScenarioExecutor(
        scenario,
        servers,
        config=config,
        control=control,
        on_record=auto_answer(control, manual),
    )
    return await executor.run(params)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    level = getattr(logging, args.debug_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    configure_logging(level == logging.DEBUG)

    try:
        data = load_document(args.scenario_file)
        wrapped = isinstance(data, dict) and "scenario" in data
        scenario_data = data["scenario"] if wrapped else data
        server_data = data.get("servers", []) if wrapped else []
        param_data = data.get("params", {}) if wrapped else {}
        if args.servers_file:
            server_data = load_document(args.servers_file)
        if args.params_file:
            param_data = load_document(args.params_file)

        scenario = Scenario.model_validate(scenario_data)
        servers = build_servers(server_data, args.server_overrides)
        params = build_params(param_data, args.param_overrides)
    except (OSError, json.JSONDecodeError, YAMLError, ValidationError, ValueError) as e:
        logger.error(f"Invalid input: {e}")
        return EXIT_VALIDATION_ERROR

    config = ExecutorConfig(
        stop_on_failure=not args.continue_on_failure,
        debug=level == logging.DEBUG,
    )

    try:
        result = asyncio.run(run_scenario(scenario, servers, params, config, args.manual))
    except ParameterValidationError as e:
        logger.error(e.message)
        print(json.dumps(e.to_dict(), indent=2))
        return EXIT_VALIDATION_ERROR
    except KeyboardInterrupt:
        print("Stopping scenario run...")
        return EXIT_CODES[RunOutcome.CANCELLED]

    print(result.model_dump_json(indent=2))
    return EXIT_CODES[result.outcome]


if __name__ == "__main__":
    sys.exit(main())
