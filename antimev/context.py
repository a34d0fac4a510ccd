"""
Execution context threaded through every token operation.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field, replace

from antimev.errors import ValidationError

MAX_CALL_DEPTH = 64


@dataclass(frozen=True)
class Event:
    """A log entry emitted by a successful operation."""
    name: str
    args: dict

    def to_dict(self) -> dict:
        return {'name': self.name, 'args': self.args}


@dataclass
class ExecutionContext:
    """
    Who is calling, at which block, against which state.

    The block number is read-only input from the host. ``events`` is shared by
    every nested call of one top-level operation.
    """
    caller: bytes
    block_number: int
    state: object
    depth: int = 0
    events: list = field(default_factory=list)

    def with_caller(self, caller: bytes) -> 'ExecutionContext':
        """Context for a nested call made on behalf of ``caller``."""
        if self.depth + 1 > MAX_CALL_DEPTH:
            raise ValidationError(f"Max call depth {MAX_CALL_DEPTH} exceeded")
        return replace(self, caller=caller, depth=self.depth + 1)

    def emit(self, name: str, **args):
        self.events.append(Event(name, args))

    @contextmanager
    def atomic(self):
        """State transaction that also drops events emitted inside it on failure."""
        mark = len(self.events)
        try:
            with self.state.transaction():
                yield self
        except Exception:
            del self.events[mark:]
            raise
