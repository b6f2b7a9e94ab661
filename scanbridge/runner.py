"""Run external executables and relay their output to the log."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)

# Exit code reported when the executable could not be started at all
LAUNCH_FAILURE_EXIT_CODE = 127


@dataclass
class ProcessResult:
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


def run_external_tool(
    args: Sequence[str],
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """
    Run a command and capture its exit code.

    ``env`` is layered over the current process environment. Values are
    never logged; they may hold credentials.
    """
    process_env = dict(os.environ)
    if env:
        process_env.update(env)

    logger.info("Executing: %s", " ".join(args))
    if cwd:
        logger.debug("Working directory: %s", cwd)

    try:
        result = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd else None,
            env=process_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.error("The executable '%s' could not be found.", args[0])
        return ProcessResult(LAUNCH_FAILURE_EXIT_CODE)
    except subprocess.TimeoutExpired:
        logger.error("'%s' timed out after %s seconds.", args[0], timeout)
        return ProcessResult(LAUNCH_FAILURE_EXIT_CODE)

    for line in result.stdout.splitlines():
        logger.info(line)
    for line in result.stderr.splitlines():
        logger.error(line)

    logger.debug("Process exited with code %d", result.returncode)
    return ProcessResult(result.returncode)
