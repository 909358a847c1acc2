from __future__ import annotations
import json
import math
import os
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from lexer import DarkError, Lexer
from extensions import AbortSignal, HookRegistry, RuntimeServices, StepContext, build_default_services
from parser import (
    INT_CHUNK_DIGITS,
    OP_END,
    OP_LABEL,
    Expression,
    Identifier,
    Instruction,
    LabelDef,
    Literal,
    Parser,
    Program,
    SourceLocation,
)


TYPE_VOID = "Void"
TYPE_ANY = "Any"
TYPE_INT = "Int"
TYPE_FLOAT = "Float"
TYPE_BOOL = "Bool"
TYPE_STR = "String"

NUMERIC_TYPES = (TYPE_INT, TYPE_FLOAT)

ERR_STACK_UNDERFLOW = "StackUnderflow"
ERR_TYPE = "TypeError"
ERR_DIVISION_BY_ZERO = "DivisionByZero"
ERR_UNDEFINED_VARIABLE = "UndefinedVariable"
ERR_UNDEFINED_LABEL = "UndefinedLabel"
ERR_INVALID_JUMP = "InvalidJumpTarget"
ERR_IO = "IOError"
ERR_EXTENSION = "ExtensionError"
ERR_INTERNAL = "InternalError"

STATUS_RUNNING = "running"
STATUS_HALTED = "halted"
STATUS_FAULTED = "faulted"
STATUS_ABORTED = "aborted"


def int_to_text(n: int) -> str:
    """``str(n)`` for ints of any size."""
    if n < 0:
        return "-" + int_to_text(-n)
    base = 10 ** INT_CHUNK_DIGITS
    if n < base:
        return str(n)
    chunks: List[str] = []
    while n >= base:
        n, low = divmod(n, base)
        chunks.append(str(low).zfill(INT_CHUNK_DIGITS))
    chunks.append(str(n))
    return "".join(reversed(chunks))


def _format_float(x: float) -> str:
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "inf" if x > 0 else "-inf"
    if x.is_integer():
        return str(int(x))
    # Shortest round-trip digits in positional form, never an exponent.
    return format(Decimal(repr(x)), "f")


@dataclass(frozen=True)
class Value:
    type: str
    value: Any = None

    def unwrap(self) -> "Value":
        """Return the concrete value held by an ``Any`` (or ``self``)."""
        current = self
        while current.type == TYPE_ANY:
            current = current.value
        return current

    def render(self) -> str:
        if self.type == TYPE_ANY:
            return self.value.render()
        if self.type == TYPE_VOID:
            return "void"
        if self.type == TYPE_BOOL:
            return "true" if self.value else "false"
        if self.type == TYPE_FLOAT:
            return _format_float(self.value)
        if self.type == TYPE_INT:
            return int_to_text(self.value)
        return str(self.value)

    def describe(self) -> str:
        rendered = self.render()
        if len(rendered) > 80:
            rendered = rendered[:77] + "..."
        if self.type == TYPE_STR:
            rendered = json.dumps(rendered)
        return f"{self.type}:{rendered}"


VOID = Value(TYPE_VOID)


class DarkRuntimeError(DarkError):
    """Raised for runtime faults. ``kind`` names the fault class."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        location: Optional[SourceLocation] = None,
        index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        self.index = index
        self.step_index: Optional[int] = None


@dataclass(eq=False)
class Scope:
    parent: Optional["Scope"] = None
    values: Dict[str, Value] = field(default_factory=dict)
    name: str = "<scope>"

    def _find_scope(self, name: str) -> Optional["Scope"]:
        scope: Optional[Scope] = self
        while scope is not None:
            if name in scope.values:
                return scope
            scope = scope.parent
        return None

    def set(self, name: str, value: Value) -> None:
        # Always binds here; an ancestor binding of the same name is shadowed, never written.
        self.values[name] = value

    def get(self, name: str) -> Value:
        scope = self._find_scope(name)
        if scope is not None:
            return scope.values[name]
        raise DarkRuntimeError(f"Undefined variable '{name}'", kind=ERR_UNDEFINED_VARIABLE)

    def snapshot(self) -> Dict[str, str]:
        return {k: v.describe() for k, v in self.values.items()}


@dataclass
class Frame:
    name: str
    scope: Scope
    frame_id: str
    return_index: Optional[int]
    call_location: Optional[SourceLocation]


@dataclass
class ExecutionState:
    program: Program
    root: Scope
    root_frame: Frame
    pc: int = 0
    operand_stack: List[Value] = field(default_factory=list)
    call_stack: List[Frame] = field(default_factory=list)
    status: str = STATUS_RUNNING
    last_value: Value = VOID
    fault: Optional[DarkRuntimeError] = None
    steps: int = 0
    # Set by control transfer during a step; replaces the usual pc + 1.
    transfer: Optional[int] = None

    @property
    def current_frame(self) -> Frame:
        return self.call_stack[-1] if self.call_stack else self.root_frame

    @property
    def current_scope(self) -> Scope:
        return self.current_frame.scope

    def describe(self) -> str:
        stack = ", ".join(v.describe() for v in self.operand_stack)
        variables = ", ".join(f"{k}={v}" for k, v in self.root.snapshot().items())
        lines = [
            f"Status: {self.status}",
            f"Program counter: {self.pc} / {len(self.program.instructions)}",
            f"Steps: {self.steps}",
            f"Operand stack (bottom to top): [{stack}]",
            f"Call depth: {len(self.call_stack)}",
            f"Root scope: {variables or '<empty>'}",
        ]
        if self.fault is not None:
            lines.append(f"Fault: {self.fault.kind} at instruction {self.fault.index}")
        return "\n".join(lines)


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    env_snapshot: Optional[Dict[str, str]]
    rewrite_record: Optional[Dict[str, Any]]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_state_id = "seed"
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Optional[Dict[str, Any]] = None,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        rewrite = {} if rewrite_record is None else rewrite_record
        rewrite.setdefault("from_state_id", self.last_state_id)
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=statement,
            env_snapshot=env_snapshot,
            rewrite_record=rewrite,
        )
        self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


class StreamSink:
    """Output sink writing to a text stream (``sys.stdout`` when none is given)."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream

    def write(self, text: str, newline: bool) -> None:
        stream = self.stream if self.stream is not None else sys.stdout
        stream.write(text + "\n" if newline else text)


OperatorImpl = Callable[[Value, Value, str], Value]


class Operators:
    """Pure binary operations shared by the arithmetic and comparison opcodes."""

    def __init__(self) -> None:
        self.table: Dict[str, OperatorImpl] = {}
        self._register("add", self._add)
        self._register("sub", self._sub)
        self._register("mul", self._mul)
        self._register("div", self._div)
        self._register("mod", self._mod)
        self._register("lt", self._lt)
        self._register("lte", self._lte)
        self._register("gt", self._gt)
        self._register("gte", self._gte)
        self._register("eq", self._eq)
        self._register("neq", self._neq)

    def _register(self, name: str, impl: OperatorImpl) -> None:
        self.table[name] = impl

    def apply(self, name: str, left: Value, right: Value) -> Value:
        for operand in (left, right):
            if operand.type == TYPE_VOID:
                raise DarkRuntimeError(f"{name} expects a value but got Void", kind=ERR_TYPE)
        return self.table[name](left, right, name)

    def _expect_number(self, value: Value, rule: str) -> Value:
        concrete = value.unwrap()
        if concrete.type not in NUMERIC_TYPES:
            raise DarkRuntimeError(f"{rule} expects Int or Float operands but got {concrete.type}", kind=ERR_TYPE)
        return concrete

    def _expect_num_pair(self, left: Value, right: Value, rule: str) -> Tuple[str, Any, Any]:
        a = self._expect_number(left, rule)
        b = self._expect_number(right, rule)
        if a.type == TYPE_FLOAT or b.type == TYPE_FLOAT:
            try:
                return TYPE_FLOAT, float(a.value), float(b.value)
            except OverflowError:
                raise DarkRuntimeError(f"{rule} operand is too large to promote to Float", kind=ERR_TYPE)
        return TYPE_INT, a.value, b.value

    def _add(self, left: Value, right: Value, rule: str) -> Value:
        t, a, b = self._expect_num_pair(left, right, rule)
        return Value(t, a + b)

    def _sub(self, left: Value, right: Value, rule: str) -> Value:
        t, a, b = self._expect_num_pair(left, right, rule)
        return Value(t, a - b)

    def _mul(self, left: Value, right: Value, rule: str) -> Value:
        t, a, b = self._expect_num_pair(left, right, rule)
        return Value(t, a * b)

    def _div(self, left: Value, right: Value, rule: str) -> Value:
        t, a, b = self._expect_num_pair(left, right, rule)
        if b == 0:
            raise DarkRuntimeError("Division by zero", kind=ERR_DIVISION_BY_ZERO)
        if t == TYPE_INT:
            return Value(TYPE_INT, self._trunc_div(a, b))
        return Value(TYPE_FLOAT, a / b)

    def _mod(self, left: Value, right: Value, rule: str) -> Value:
        t, a, b = self._expect_num_pair(left, right, rule)
        if b == 0:
            raise DarkRuntimeError("Modulo by zero", kind=ERR_DIVISION_BY_ZERO)
        if t == TYPE_INT:
            return Value(TYPE_INT, a - b * self._trunc_div(a, b))
        return Value(TYPE_FLOAT, math.fmod(a, b))

    def _trunc_div(self, a: int, b: int) -> int:
        q = abs(a) // abs(b)
        return q if (a < 0) == (b < 0) else -q

    def _compare(self, left: Value, right: Value, rule: str, test: Callable[[Any, Any], bool]) -> Value:
        a = self._expect_number(left, rule)
        b = self._expect_number(right, rule)
        return Value(TYPE_BOOL, bool(test(a.value, b.value)))

    def _lt(self, left: Value, right: Value, rule: str) -> Value:
        return self._compare(left, right, rule, lambda a, b: a < b)

    def _lte(self, left: Value, right: Value, rule: str) -> Value:
        return self._compare(left, right, rule, lambda a, b: a <= b)

    def _gt(self, left: Value, right: Value, rule: str) -> Value:
        return self._compare(left, right, rule, lambda a, b: a > b)

    def _gte(self, left: Value, right: Value, rule: str) -> Value:
        return self._compare(left, right, rule, lambda a, b: a >= b)

    def _eq(self, left: Value, right: Value, rule: str) -> Value:
        return Value(TYPE_BOOL, values_equal(left, right))

    def _neq(self, left: Value, right: Value, rule: str) -> Value:
        return Value(TYPE_BOOL, not values_equal(left, right))


def values_equal(left: Value, right: Value) -> bool:
    a = left.unwrap()
    b = right.unwrap()
    if a.type != b.type:
        return False
    return a.value == b.value


Handler = Callable[[Instruction, ExecutionState], Value]


class Interpreter:
    def __init__(
        self,
        *,
        source: str = "",
        filename: str = "<string>",
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Any] = None,
        program: Optional[Program] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename if filename.startswith("<") else os.path.abspath(filename)
        self.verbose = verbose
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or StreamSink()
        self.operators = Operators()
        self.program = program
        self.state: Optional[ExecutionState] = None
        self.logger = StateLogger(verbose=verbose)
        self.io_log: List[Dict[str, Any]] = []
        self.frame_counter = 0
        self._handlers: Dict[str, Handler] = {
            "push": self._push,
            "pop": self._pop,
            "peek": self._peek,
            "add": self._arithmetic,
            "sub": self._arithmetic,
            "mul": self._arithmetic,
            "div": self._arithmetic,
            "mod": self._arithmetic,
            "lt": self._comparison,
            "lte": self._comparison,
            "gt": self._comparison,
            "gte": self._comparison,
            "eq": self._comparison,
            "neq": self._comparison,
            "jmp": self._jump,
            "rjmp": self._jump,
            "jmpt": self._conditional_jump,
            "jmpf": self._conditional_jump,
            "rjmpt": self._conditional_jump,
            "rjmpf": self._conditional_jump,
            "set": self._set,
            "call": self._call_label,
            "print": self._print,
            "printn": self._print,
            OP_LABEL: self._skip_label,
            OP_END: self._return_from_label,
        }

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines)
        return parser.parse()

    def run(self) -> ExecutionState:
        """Run the program from a fresh state until it halts, faults or is aborted."""
        if self.program is None:
            self.program = self.parse()
        state = self.new_state(self.program)
        self._emit_event("program_start", self, state)
        self.execute(state)
        self._emit_event("program_end", self, state)
        return state

    def new_state(self, program: Program) -> ExecutionState:
        self.logger = StateLogger(verbose=self.verbose)
        self.logger.record(frame=None, location=None, statement="<seed>", rewrite_record={"rule": "SEED"})
        self.io_log = []
        self.frame_counter = 0
        root = Scope(name="<root>")
        state = ExecutionState(program=program, root=root, root_frame=self._new_frame("<top-level>", root, None, None))
        self.state = state
        return state

    def execute(self, state: ExecutionState, start: Optional[int] = None) -> ExecutionState:
        if start is not None:
            state.pc = start
        state.status = STATUS_RUNNING
        state.fault = None
        instructions = state.program.instructions
        try:
            while state.pc < len(instructions):
                self.step(state)
        except DarkRuntimeError as error:
            self._fault(state, error)
            raise
        except AbortSignal:
            state.status = STATUS_ABORTED
            raise
        except Exception as exc:
            instruction = instructions[state.pc] if state.pc < len(instructions) else None
            wrapped = DarkRuntimeError(
                f"Internal interpreter error: {exc}",
                kind=ERR_INTERNAL,
                location=instruction.location if instruction else None,
                index=state.pc,
            )
            self._fault(state, wrapped)
            raise wrapped from exc
        # Frames left open when the sequence runs out are discarded.
        state.call_stack.clear()
        state.status = STATUS_HALTED
        return state

    def step(self, state: ExecutionState) -> Value:
        index = state.pc
        instruction = state.program.instructions[index]
        self._log_step(state, instruction)
        self._emit_event("before_instruction", self, instruction, state)
        state.transfer = None
        try:
            result = self.evaluate(instruction, state)
        except DarkRuntimeError as error:
            if error.index is None:
                error.index = index
            raise
        state.last_value = result
        state.steps += 1
        state.pc = state.transfer if state.transfer is not None else index + 1
        state.transfer = None
        self._emit_event("after_instruction", self, instruction, result, state)
        return result

    def evaluate(self, instruction: Instruction, state: ExecutionState) -> Value:
        try:
            return self._handlers[instruction.opcode](instruction, state)
        except DarkRuntimeError as error:
            # The innermost instruction claims the error first.
            if error.location is None:
                error.location = instruction.location
            raise

    def _evaluate_argument(self, expression: Expression, state: ExecutionState) -> Value:
        if isinstance(expression, Literal):
            if expression.literal_type == TYPE_ANY:
                return Value(TYPE_ANY, VOID)
            return Value(expression.literal_type, expression.value)
        if isinstance(expression, Identifier):
            try:
                return state.current_scope.get(expression.name)
            except DarkRuntimeError as error:
                error.location = expression.location
                raise
        if isinstance(expression, Instruction):
            return self.evaluate(expression, state)
        raise DarkRuntimeError("Unsupported argument", kind=ERR_INTERNAL, location=expression.location)

    def _expect_value(self, value: Value, rule: str) -> Value:
        if value.type == TYPE_VOID:
            raise DarkRuntimeError(f"{rule} expects a value but got Void", kind=ERR_TYPE)
        return value

    def _expect_int(self, value: Value, rule: str) -> int:
        concrete = value.unwrap()
        if concrete.type != TYPE_INT:
            raise DarkRuntimeError(f"{rule} expects an Int but got {concrete.type}", kind=ERR_TYPE)
        return concrete.value

    # ---- operand stack ----

    def _pop_operand(self, state: ExecutionState, rule: str) -> Value:
        if not state.operand_stack:
            raise DarkRuntimeError(f"{rule} on an empty operand stack", kind=ERR_STACK_UNDERFLOW)
        return state.operand_stack.pop()

    def _peek_operand(self, state: ExecutionState, rule: str) -> Value:
        if not state.operand_stack:
            raise DarkRuntimeError(f"{rule} on an empty operand stack", kind=ERR_STACK_UNDERFLOW)
        return state.operand_stack[-1]

    def _push(self, instruction: Instruction, state: ExecutionState) -> Value:
        value = self._expect_value(self._evaluate_argument(instruction.args[0], state), "push")
        state.operand_stack.append(value)
        return VOID

    def _pop(self, instruction: Instruction, state: ExecutionState) -> Value:
        return self._pop_operand(state, "pop")

    def _peek(self, instruction: Instruction, state: ExecutionState) -> Value:
        return self._peek_operand(state, "peek")

    # ---- expressions ----

    def _arithmetic(self, instruction: Instruction, state: ExecutionState) -> Value:
        opcode = instruction.opcode
        if instruction.args:
            left = self._evaluate_argument(instruction.args[0], state)
            right = self._evaluate_argument(instruction.args[1], state)
        else:
            right = self._pop_operand(state, opcode)
            left = self._pop_operand(state, opcode)
        return self.operators.apply(opcode, left, right)

    def _comparison(self, instruction: Instruction, state: ExecutionState) -> Value:
        left = self._evaluate_argument(instruction.args[0], state)
        right = self._evaluate_argument(instruction.args[1], state)
        return self.operators.apply(instruction.opcode, left, right)

    # ---- control transfer ----

    def _transfer(self, state: ExecutionState, target: int) -> None:
        length = len(state.program.instructions)
        if not 0 <= target < length:
            raise DarkRuntimeError(
                f"Jump target {target} is outside the program (valid: 0 to {length - 1})",
                kind=ERR_INVALID_JUMP,
            )
        state.transfer = target

    def _jump(self, instruction: Instruction, state: ExecutionState) -> Value:
        amount = self._expect_int(self._evaluate_argument(instruction.args[0], state), instruction.opcode)
        if instruction.opcode == "rjmp":
            amount += state.pc
        self._transfer(state, amount)
        return VOID

    def _conditional_jump(self, instruction: Instruction, state: ExecutionState) -> Value:
        opcode = instruction.opcode
        condition = self._peek_operand(state, opcode).unwrap()
        if condition.type != TYPE_BOOL:
            raise DarkRuntimeError(f"{opcode} expects a Bool on top of the stack but found {condition.type}", kind=ERR_TYPE)
        amount = self._expect_int(self._evaluate_argument(instruction.args[0], state), opcode)
        jump_when = opcode.endswith("t")
        if condition.value != jump_when:
            return VOID
        if opcode.startswith("r"):
            amount += state.pc
        self._transfer(state, amount)
        return VOID

    def _definition_scope(self, state: ExecutionState, label: LabelDef) -> Scope:
        if label.parent is None:
            return state.root
        for frame in reversed(state.call_stack):
            if frame.name == label.parent:
                return frame.scope
        # The enclosing label is not active: chain through an empty template for it.
        enclosing = state.program.labels[label.parent]
        return Scope(parent=self._definition_scope(state, enclosing), name=f"<template @{enclosing.name}>")

    def _call_label(self, instruction: Instruction, state: ExecutionState) -> Value:
        name = instruction.target
        label = state.program.labels.get(name)
        if label is None:
            raise DarkRuntimeError(f"Undefined label '@{name}'", kind=ERR_UNDEFINED_LABEL)
        args = [self._expect_value(self._evaluate_argument(arg, state), "call") for arg in instruction.args]
        scope = Scope(parent=self._definition_scope(state, label), name=f"@{label.name}")
        # Surplus arguments are dropped; missing parameters stay unbound.
        for param, value in zip(label.params, args):
            scope.set(param, value)
        frame = self._new_frame(label.name, scope, state.pc + 1, instruction.location)
        self._emit_event("before_call", self, label.name, args, state)
        state.call_stack.append(frame)
        state.transfer = label.start + 1
        return VOID

    def _return_from_label(self, instruction: Instruction, state: ExecutionState) -> Value:
        if not state.call_stack:
            raise DarkRuntimeError(
                f"End of label '@{instruction.target}' reached outside a call",
                kind=ERR_STACK_UNDERFLOW,
            )
        frame = state.call_stack.pop()
        # Return indices may equal the program length; that simply halts.
        state.transfer = frame.return_index
        self._emit_event("after_return", self, frame.name, state)
        return VOID

    def _skip_label(self, instruction: Instruction, state: ExecutionState) -> Value:
        state.transfer = state.program.labels[instruction.target].end + 1
        return VOID

    # ---- scope and output ----

    def _set(self, instruction: Instruction, state: ExecutionState) -> Value:
        value = self._expect_value(self._evaluate_argument(instruction.args[0], state), "set")
        state.current_scope.set(instruction.target, value)
        return VOID

    def _print(self, instruction: Instruction, state: ExecutionState) -> Value:
        value = self._expect_value(self._evaluate_argument(instruction.args[0], state), instruction.opcode)
        text = value.render()
        newline = instruction.opcode == "printn"
        try:
            self.output_sink.write(text, newline)
        except (OSError, ValueError) as exc:
            raise DarkRuntimeError(f"Output sink failed: {exc}", kind=ERR_IO)
        self.io_log.append({"event": instruction.opcode.upper(), "text": text, "newline": newline})
        return VOID

    # ---- bookkeeping ----

    def _fault(self, state: ExecutionState, error: DarkRuntimeError) -> None:
        state.status = STATUS_FAULTED
        state.fault = error
        if self.logger.entries:
            error.step_index = self.logger.entries[-1].step_index
        self._emit_event("on_error", self, error)

    def _new_frame(
        self,
        name: str,
        scope: Scope,
        return_index: Optional[int],
        call_location: Optional[SourceLocation],
    ) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, scope=scope, frame_id=frame_id, return_index=return_index, call_location=call_location)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (DarkRuntimeError, AbortSignal):
            raise
        except Exception as exc:
            loc = None
            if self.logger.entries:
                loc = self.logger.entries[-1].source_location
            raise DarkRuntimeError(f"Extension hook '{event}' failed: {exc}", kind=ERR_EXTENSION, location=loc)

    def _log_step(self, state: ExecutionState, instruction: Instruction) -> None:
        frame = state.current_frame
        env_snapshot = frame.scope.snapshot() if self.verbose else None
        location = instruction.location
        entry = self.logger.record(
            frame=frame,
            location=location,
            statement=location.statement if location else None,
            env_snapshot=env_snapshot,
            rewrite_record={"rule": instruction.opcode, "index": instruction.index},
        )
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, rule=instruction.opcode, location=location, extra={"index": instruction.index}),
            )
        except (DarkRuntimeError, AbortSignal):
            raise
        except Exception as exc:
            raise DarkRuntimeError(f"Extension step rule failed: {exc}", kind=ERR_EXTENSION, location=location)


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        state = self.interpreter.state
        if state is None:
            return []
        frames: List[TracebackFrame] = []
        for frame in [state.root_frame] + state.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            location = entry.source_location if entry else frame.call_location
            name = frame.name if frame is state.root_frame else f"@{frame.name}"
            frames.append(
                TracebackFrame(
                    name=name,
                    location=location,
                    statement=entry.statement if entry else None,
                    state_entry=entry,
                )
            )
        return frames

    def _caret_line(self, location: SourceLocation) -> Optional[str]:
        lines = self.interpreter._source_lines
        if location.file != self.interpreter.filename or not 0 < location.line <= len(lines):
            return None
        raw = lines[location.line - 1]
        if raw.strip() != location.statement:
            return None
        indent = len(raw) - len(raw.lstrip())
        offset = location.column - 1 - indent
        if offset < 0:
            return None
        return "    " + " " * offset + "^"

    def format_text(self, error: DarkRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if frame.state_entry:
                lines.append(
                    f"    State log index: {frame.state_entry.step_index}  State id: {frame.state_entry.state_id}"
                )
                if verbose and frame.state_entry.env_snapshot is not None:
                    snapshot = ", ".join(f"{k}={v}" for k, v in frame.state_entry.env_snapshot.items())
                    lines.append(f"    Env snapshot: {snapshot}")
        if error.location is not None:
            caret = self._caret_line(error.location)
            if caret is not None:
                lines.append(f"  At line {error.location.line}, column {error.location.column}:")
                lines.append(f"    {error.location.statement}")
                lines.append(caret)
        where = f" (instruction {error.index})" if error.index is not None else ""
        lines.append(f"{error.__class__.__name__}[{error.kind}]: {error.message}{where}")
        return "\n".join(lines)

    def to_json(self, error: DarkRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames()):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            if frame.state_entry:
                entry["state_id"] = frame.state_entry.state_id
                entry["step_index"] = frame.state_entry.step_index
                if frame.state_entry.env_snapshot is not None:
                    entry["env_snapshot"] = frame.state_entry.env_snapshot
                if frame.state_entry.rewrite_record is not None:
                    entry["rewrite_record"] = frame.state_entry.rewrite_record
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "instruction_index": error.index,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
