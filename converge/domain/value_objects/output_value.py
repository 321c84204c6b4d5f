from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class OutputValue:
    """
    Named template over node attributes, surfaced after apply.
    """
    name: str
    value: Any
    description: str = ""
    sensitive: bool = False

    def __post_init__(self):
        if not self.name:
            raise ValueError("Output name cannot be empty")
