from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from lexer import DarkParseError, Token


OP_LABEL = "label"
OP_END = "end"

# Instructions whose argument count never varies.
FIXED_ARITY: Dict[str, int] = {
    "push": 1,
    "pop": 0,
    "peek": 0,
    "lt": 2,
    "lte": 2,
    "gt": 2,
    "gte": 2,
    "eq": 2,
    "neq": 2,
    "jmp": 1,
    "rjmp": 1,
    "jmpt": 1,
    "jmpf": 1,
    "rjmpt": 1,
    "rjmpf": 1,
    "print": 1,
    "printn": 1,
}

# Arithmetic takes either no arguments (operands come off the stack) or two.
OPTIONAL_BINARY = {"add", "sub", "mul", "div", "mod"}

ARGUMENT_STARTS = {"NUMBER", "FLOAT", "STRING", "BOOL", "VOID", "ANY", "IDENT", "INSTRUCTION"}

# Digits converted per step; stays under the interpreter's int string limit.
INT_CHUNK_DIGITS = 1000


def digits_to_int(text: str) -> int:
    """``int(text)`` for a lexed integer literal of any length."""
    negative = text.startswith("-")
    digits = text[1:] if negative else text
    value = 0
    for start in range(0, len(digits), INT_CHUNK_DIGITS):
        chunk = digits[start:start + INT_CHUNK_DIGITS]
        value = value * 10 ** len(chunk) + int(chunk)
    return -value if negative else value


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Expression(Node):
    pass


@dataclass
class Literal(Expression):
    value: Union[int, float, bool, str, None]
    literal_type: str


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class Instruction(Expression):
    opcode: str
    args: List[Expression] = field(default_factory=list)
    # Variable name for ``set``, label name for ``call`` and the label entries.
    target: Optional[str] = None
    # Position in the flat sequence; None for nested instructions.
    index: Optional[int] = None


@dataclass
class LabelDef:
    name: str
    params: Tuple[str, ...]
    start: int
    end: int
    parent: Optional[str]
    location: SourceLocation


@dataclass
class Program(Node):
    instructions: List[Instruction]
    labels: Dict[str, LabelDef]

    def extend(self, fragment: "Program") -> None:
        """Append a fragment parsed with ``start_index=len(self.instructions)``."""
        if fragment.instructions and fragment.instructions[0].index != len(self.instructions):
            raise ValueError("Fragment indices do not continue this program")
        self.instructions.extend(fragment.instructions)
        self.labels.update(fragment.labels)


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        start_index: int = 0,
        known_labels: Optional[Iterable[str]] = None,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.start_index = start_index
        self.known_labels = set(known_labels) if known_labels is not None else set()
        self.index = 0

    def parse(self) -> Program:
        instructions: List[Instruction] = []
        labels: Dict[str, LabelDef] = {}
        # (header token, params, start index) for every label still waiting for its end
        open_labels: List[Tuple[Token, Tuple[str, ...], int]] = []

        while self._peek().type != "EOF":
            if self._match("NEWLINE"):
                continue
            token = self._peek()
            position = self.start_index + len(instructions)
            if token.type == "LABEL":
                self._consume("LABEL")
                name = token.value
                if name in labels or name in self.known_labels or any(t.value == name for t, _, _ in open_labels):
                    raise DarkParseError(f"Label '@{name}' is already defined at {self._where(token)}")
                params = self._parse_params(token)
                open_labels.append((token, params, position))
                instructions.append(
                    Instruction(location=self._location_from_token(token), opcode=OP_LABEL, target=name, index=position)
                )
            elif token.type == "END":
                self._consume("END")
                if not open_labels:
                    raise DarkParseError(f"'end' without a label at {self._where(token)}")
                header, params, start = open_labels.pop()
                parent = open_labels[-1][0].value if open_labels else None
                labels[header.value] = LabelDef(
                    name=header.value,
                    params=params,
                    start=start,
                    end=position,
                    parent=parent,
                    location=self._location_from_token(header),
                )
                instructions.append(
                    Instruction(location=self._location_from_token(token), opcode=OP_END, target=header.value, index=position)
                )
            elif token.type == "INSTRUCTION":
                instruction = self._parse_instruction()
                instruction.index = position
                instructions.append(instruction)
            else:
                raise DarkParseError(f"Expected an instruction but found {token.type} at {self._where(token)}")
            self._expect_line_end()

        if open_labels:
            header = open_labels[-1][0]
            raise DarkParseError(f"No 'end' could be found for label '@{header.value}' at {self._where(header)}")
        eof_token: Token = self._peek()
        return Program(location=self._location_from_token(eof_token), instructions=instructions, labels=labels)

    def _parse_params(self, header: Token) -> Tuple[str, ...]:
        params: List[str] = []
        while self._peek().type == "IDENT":
            param = self._consume("IDENT")
            if param.value in params:
                raise DarkParseError(
                    f"Duplicate parameter '{param.value}' in label '@{header.value}' at {self._where(param)}"
                )
            params.append(param.value)
        return tuple(params)

    def _parse_instruction(self) -> Instruction:
        token = self._consume("INSTRUCTION")
        opcode = token.value
        location = self._location_from_token(token)
        if opcode == "set":
            name = self._consume_target(token, "a variable name")
            value = self._parse_argument(token, 1)
            return Instruction(location=location, opcode=opcode, args=[value], target=name.value)
        if opcode == "call":
            label = self._consume_target(token, "a label name")
            args: List[Expression] = []
            while self._peek().type in ARGUMENT_STARTS:
                args.append(self._parse_argument(token, 0))
            return Instruction(location=location, opcode=opcode, args=args, target=label.value)
        if opcode in OPTIONAL_BINARY:
            if self._peek().type not in ARGUMENT_STARTS:
                return Instruction(location=location, opcode=opcode)
            return Instruction(
                location=location,
                opcode=opcode,
                args=[self._parse_argument(token, 2), self._parse_argument(token, 1)],
            )
        arity = FIXED_ARITY[opcode]
        return Instruction(
            location=location,
            opcode=opcode,
            args=[self._parse_argument(token, remaining) for remaining in range(arity, 0, -1)],
        )

    def _parse_argument(self, owner: Token, remaining: int) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if token.type == "NUMBER":
            self.index += 1
            return Literal(location=location, value=digits_to_int(token.value), literal_type="Int")
        if token.type == "FLOAT":
            self.index += 1
            return Literal(location=location, value=float(token.value), literal_type="Float")
        if token.type == "STRING":
            self.index += 1
            return Literal(location=location, value=token.value, literal_type="String")
        if token.type == "BOOL":
            self.index += 1
            return Literal(location=location, value=token.value == "true", literal_type="Bool")
        if token.type == "VOID":
            self.index += 1
            return Literal(location=location, value=None, literal_type="Void")
        if token.type == "ANY":
            self.index += 1
            return Literal(location=location, value=None, literal_type="Any")
        if token.type == "IDENT":
            self.index += 1
            return Identifier(location=location, name=token.value)
        if token.type == "INSTRUCTION":
            return self._parse_instruction()
        if token.type in ("NEWLINE", "EOF"):
            noun = "argument" if remaining == 1 else "arguments"
            raise DarkParseError(f"'{owner.value}' expects {remaining} more {noun} at {self._where(owner)}")
        raise DarkParseError(f"Unexpected {token.type} in argument of '{owner.value}' at {self._where(token)}")

    def _consume_target(self, owner: Token, description: str) -> Token:
        token = self._peek()
        if token.type != "IDENT":
            raise DarkParseError(f"'{owner.value}' expects {description} but found {token.type} at {self._where(token)}")
        self.index += 1
        return token

    def _expect_line_end(self) -> None:
        token = self._peek()
        if token.type == "EOF":
            return
        if token.type != "NEWLINE":
            raise DarkParseError(f"Unexpected {token.type} '{token.value}' at {self._where(token)}")
        self.index += 1

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise DarkParseError(f"Expected token {token_type} but found {token.type} at {self._where(token)}")
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _where(self, token: Token) -> str:
        return f"{self.filename}:{token.line}:{token.column}"

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)
