"""
Plan schema - an ordered, immutable sequence of instructions.

A Plan is created fresh per script run by the interpreter (or the bulk
compiler), is never mutated afterwards, and is discarded once executed.
Execution order equals emission order; nothing is reordered or inferred.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator

from .instructions import Instruction


@dataclass(frozen=True)
class Plan:
    """
    An interpreted plan ready for validation and execution.

    Attributes:
        package_id: Identifier of the script or package the plan came from
        instructions: Ordered tuple of instructions
    """
    package_id: str
    instructions: tuple[Instruction, ...] = field(default_factory=tuple)

    def get(self, index: int) -> Instruction:
        """Get an instruction by its 1-based plan index."""
        if index < 1 or index > len(self.instructions):
            raise IndexError(f"Plan has no instruction {index} (size {len(self.instructions)})")
        return self.instructions[index - 1]

    def size(self) -> int:
        return len(self.instructions)

    def indexed(self) -> Iterator[tuple[int, Instruction]]:
        """Iterate (1-based index, instruction) pairs in execution order."""
        return enumerate(self.instructions, start=1)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)

    def __len__(self) -> int:
        return len(self.instructions)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "package_id": self.package_id,
            "instructions": [
                {"index": index, **instruction.to_dict()}
                for index, instruction in self.indexed()
            ],
        }
