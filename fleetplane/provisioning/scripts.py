"""Remote start/stop scripts and their failure classification.

Scripts run every command through ``run_cmd``, which prints a line starting
with the failure marker and exits when a command fails:

    Command Failed: apt-get install -y openjdk-17-jre (disk full)

Output containing the marker means the script failed; the text after the
marker on the first such line is the human-readable cause. Output without
the marker means success, even when the exit status is non-zero.
"""

from __future__ import annotations

import logging
import shlex

from fleetplane.errors import NodeInstallFailure
from fleetplane.providers.base import ExecResponse
from fleetplane.provisioning.models import ProvisionRequest

__all__ = [
    "FAILURE_PREFIX",
    "build_start_script",
    "build_stop_script",
    "classify_response",
    "failure_from_exception",
    "parse_script_failure",
]

logger = logging.getLogger(__name__)

FAILURE_PREFIX = "Command Failed:"

_SCRIPT_HEADER = f"""#!/bin/bash
run_cmd() {{
  output=$("$@" 2>&1)
  status=$?
  if [ $status -ne 0 ]; then
    echo "{FAILURE_PREFIX} $* ($(echo "$output" | tail -n 1))"
    exit $status
  fi
  echo "$output"
}}
"""


def _exports(request: ProvisionRequest, container_name: str) -> list[str]:
    lines = [f"export FLEET_CONTAINER_NAME={shlex.quote(container_name)}"]
    for key, value in sorted(request.environment.items()):
        lines.append(f"export {key}={shlex.quote(str(value))}")
    return lines


def _commands(script: str) -> list[str]:
    return [
        f"run_cmd bash -c {shlex.quote(line.strip())}"
        for line in script.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def build_start_script(container_name: str, request: ProvisionRequest) -> str:
    """Script that installs (if needed) and starts a container."""
    lines = [_SCRIPT_HEADER.rstrip("\n")]
    lines += _exports(request, container_name)
    lines += _commands(request.install_script)
    lines.append(f'echo "Container {container_name} started"')
    return "\n".join(lines) + "\n"


def build_stop_script(container_name: str, request: ProvisionRequest) -> str:
    """Script that stops a container."""
    lines = [_SCRIPT_HEADER.rstrip("\n")]
    lines += _exports(request, container_name)
    lines += _commands(request.stop_script)
    lines.append(f'echo "Container {container_name} stopped"')
    return "\n".join(lines) + "\n"


def parse_script_failure(output: str) -> str:
    """Extract the failure message following the marker, or "" if absent."""
    for line in output.splitlines():
        index = line.find(FAILURE_PREFIX)
        if index >= 0:
            return line[index + len(FAILURE_PREFIX):].strip()
    return ""


def classify_response(response: ExecResponse | None, node_id: str | None = None) -> NodeInstallFailure | None:
    """Turn a script response into a failure, or None on success."""
    if response is None:
        return NodeInstallFailure("No response received for install script.", node_id=node_id)
    output = response.output or ""
    if FAILURE_PREFIX in output:
        return NodeInstallFailure(parse_script_failure(output), node_id=node_id, output=output)
    if response.exit_status != 0:
        logger.info(
            f"Script on {node_id} exited with status {response.exit_status} "
            f"without a failure marker; treating as success"
        )
    return None


def failure_from_exception(exc: BaseException, node_id: str | None = None) -> BaseException:
    """Normalise an exception raised by a remote call.

    Exceptions whose text carries the failure marker become a
    NodeInstallFailure with the parsed message; others are returned as is.
    """
    if isinstance(exc, NodeInstallFailure):
        return exc
    text = str(exc)
    if FAILURE_PREFIX in text:
        return NodeInstallFailure(parse_script_failure(text), node_id=node_id, output=text)
    return exc
