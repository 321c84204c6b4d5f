from dataclasses import dataclass
from typing import Any

TRIGGER_FIELDS = ("revision", "short_revision", "branch", "repository")


@dataclass(frozen=True)
class TriggerEvent:
    """
    External event (a push) that starts a pipeline run.
    """
    revision: str
    branch: str = ""
    repository: str = ""

    def __post_init__(self):
        if not self.revision:
            raise ValueError("Trigger revision cannot be empty")

    @property
    def short_revision(self) -> str:
        return self.revision[:7]

    def scope(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "short_revision": self.short_revision,
            "branch": self.branch,
            "repository": self.repository,
        }
