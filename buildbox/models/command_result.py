"""
Command Result Model
Exit status of one command executed inside a run container.
"""
from pydantic import BaseModel


class CommandResult(BaseModel):
    command: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
