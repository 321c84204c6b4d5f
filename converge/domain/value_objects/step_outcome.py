from dataclasses import dataclass


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of running one step command, locally or on a build host.
    """
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
