"""
Fabric Command Runner

Architectural Intent:
- Infrastructure adapter implementing StepRunnerPort via Fabric/SSH
- Provides the `remote` action kind: the step command runs on a build host
- Fabric is blocking, so each run happens in an executor thread

Security:
- SSH connections use connect_timeout, allow_agent, look_for_keys
- An explicit key file can be configured instead of agent/key discovery
"""

import asyncio
import logging
import shlex
from typing import Mapping, Optional

from fabric import Connection
from invoke.exceptions import CommandTimedOut

from converge.domain.errors import StepExecutionError
from converge.domain.ports.step_runner_port import StepRunnerPort
from converge.domain.value_objects.step_outcome import StepOutcome

logger = logging.getLogger(__name__)


def parse_host(target: str) -> tuple[str, str, int]:
    """Split "user@host:port" into its parts (user defaults to root, port to 22)."""
    user, _, rest = target.rpartition("@")
    host, _, port = rest.partition(":")
    if not host:
        raise ValueError(f"Invalid build host: {target!r}")
    return user or "root", host, int(port) if port else 22


class FabricCommandRunner(StepRunnerPort):
    """Adapter implementing StepRunnerPort via Fabric/SSH."""

    def __init__(self, build_host: str, key_filename: str = "", workdir: str = "") -> None:
        self.user, self.host, self.port = parse_host(build_host)
        self.key_filename = key_filename
        self.workdir = workdir

    def _get_connection(self) -> Connection:
        connect_kwargs = {
            "allow_agent": True,
            "look_for_keys": True,
        }
        if self.key_filename:
            connect_kwargs["key_filename"] = self.key_filename
        return Connection(
            host=self.host,
            user=self.user,
            port=self.port,
            connect_timeout=30,
            connect_kwargs=connect_kwargs,
        )

    async def run(
        self,
        command: str,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        def _run() -> StepOutcome:
            full_command = f"cd {shlex.quote(self.workdir)} && {command}" if self.workdir else command
            logger.debug("Running on %s@%s: %s", self.user, self.host, full_command)
            conn = self._get_connection()
            try:
                result = conn.run(
                    full_command,
                    hide=True,
                    warn=True,
                    env=dict(env or {}),
                    timeout=timeout,
                )
            except CommandTimedOut:
                raise TimeoutError(f"remote command timed out after {timeout}s") from None
            except Exception as e:
                raise StepExecutionError(
                    f"cannot run on {self.user}@{self.host}:{self.port}: {e}"
                ) from e
            finally:
                conn.close()
            return StepOutcome(
                exit_code=result.exited,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return await asyncio.get_running_loop().run_in_executor(None, _run)
