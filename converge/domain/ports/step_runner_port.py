"""
Step Runner Port

Architectural Intent:
- Port interface for running one pipeline step command
- Implemented by a local subprocess runner and a Fabric (SSH) runner
- A non-zero exit code is a normal outcome; only infrastructure problems
  (host unreachable, spawn failure) raise
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional

from converge.domain.value_objects.step_outcome import StepOutcome


class StepRunnerPort(ABC):
    @abstractmethod
    async def run(
        self,
        command: str,
        env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        """
        Runs a shell command and returns its exit code and captured output.
        """
        pass
