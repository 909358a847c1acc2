"""Shared helpers for the DarkVM test suite."""

import pytest
from typing import List, Optional, Tuple

from extensions import RuntimeServices
from interpreter import ExecutionState, Interpreter


class CollectingSink:
    """Output sink that records every write instead of printing it."""

    def __init__(self) -> None:
        self.writes: List[Tuple[str, bool]] = []

    def write(self, text: str, newline: bool) -> None:
        self.writes.append((text, newline))

    @property
    def text(self) -> str:
        return "".join(t + "\n" if nl else t for t, nl in self.writes)


def make_interpreter(source: str, services: Optional[RuntimeServices] = None, verbose: bool = False):
    sink = CollectingSink()
    interpreter = Interpreter(source=source, filename="<string>", verbose=verbose, services=services, output_sink=sink)
    return interpreter, sink


def run_source(source: str, services: Optional[RuntimeServices] = None) -> Tuple[ExecutionState, CollectingSink]:
    interpreter, sink = make_interpreter(source, services)
    state = interpreter.run()
    return state, sink


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()
