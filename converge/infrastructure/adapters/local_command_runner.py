"""
Local Command Runner

Architectural Intent:
- Infrastructure adapter implementing StepRunnerPort with a local shell
- Provides the `command` action kind for pipeline steps
- Uses subprocess wrapped in run_in_executor so several steps can run at once
"""

import asyncio
import logging
import os
import subprocess
from typing import Mapping, Optional

from converge.domain.errors import StepExecutionError
from converge.domain.ports.step_runner_port import StepRunnerPort
from converge.domain.value_objects.step_outcome import StepOutcome

logger = logging.getLogger(__name__)


class LocalCommandRunner(StepRunnerPort):
    def __init__(self, workdir: str = ".") -> None:
        self.workdir = workdir

    async def run(
        self,
        command: str,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        def _run() -> StepOutcome:
            logger.debug("Running locally in %s: %s", self.workdir, command)
            try:
                result = subprocess.run(
                    command,
                    shell=True,
                    cwd=self.workdir,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    env={**os.environ, **dict(env)} if env else None,
                )
            except subprocess.TimeoutExpired:
                raise TimeoutError(f"command timed out after {timeout}s") from None
            except OSError as e:
                raise StepExecutionError(f"cannot run {command!r}: {e}") from None
            return StepOutcome(
                exit_code=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return await asyncio.get_running_loop().run_in_executor(None, _run)
