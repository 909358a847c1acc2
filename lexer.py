from __future__ import annotations
from dataclasses import dataclass
from typing import List


class DarkError(Exception):
    """Base class for VM errors."""


class DarkParseError(DarkError):
    """Raised when lexing or parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


INSTRUCTIONS = {
    "push",
    "pop",
    "peek",
    "add",
    "sub",
    "mul",
    "div",
    "mod",
    "lt",
    "lte",
    "gt",
    "gte",
    "eq",
    "neq",
    "jmp",
    "rjmp",
    "jmpt",
    "jmpf",
    "rjmpt",
    "rjmpf",
    "set",
    "call",
    "print",
    "printn",
}

DIGITS = "0123456789"

# Case-insensitive words that are not instructions.
KEYWORDS = {
    "end": "END",
    "true": "BOOL",
    "false": "BOOL",
    "void": "VOID",
    "any": "ANY",
}


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch in " \t\r":
                _advance()
                continue
            if ch == "\n" or ch == ";":
                tokens_append(Token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if ch == "-":
                nxt = text[self.index + 1] if self.index + 1 < n else ""
                if nxt == "-":
                    self._consume_comment()
                    continue
                if nxt == "!":
                    self._consume_block_comment()
                    continue
                if nxt != "" and nxt in DIGITS:
                    tokens_append(self._consume_number())
                    continue
                raise DarkParseError(
                    f"Unexpected character '-' at {self.filename}:{self.line}:{self.column}"
                )
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch == "@":
                tokens_append(self._consume_label())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_word())
                continue
            raise DarkParseError(
                f"Unexpected character '{ch}' at {self.filename}:{self.line}:{self.column}"
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] != "\n":
            self._advance()

    def _consume_block_comment(self) -> None:
        line, col = self.line, self.column
        text = self.text
        self._advance()  # '-'
        self._advance()  # '!'
        while self.index < len(text):
            if text.startswith("!-", self.index):
                self._advance()
                self._advance()
                return
            self._advance()
        raise DarkParseError(f"Unterminated block comment at {self.filename}:{line}:{col}")

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        if self._peek() == "-":
            chars.append("-")
            self._advance()
        has_point = False
        text = self.text
        n = len(text)
        while self.index < n:
            ch = text[self.index]
            if ch in DIGITS:
                chars.append(ch)
                self._advance()
                continue
            if ch == "." and not has_point and self.index + 1 < n and text[self.index + 1] in DIGITS:
                has_point = True
                chars.append(ch)
                self._advance()
                continue
            break
        if self.index < n and self._is_identifier_part(text[self.index]):
            raise DarkParseError(f"Invalid number format at {self.filename}:{line}:{col}")
        return Token("FLOAT" if has_point else "NUMBER", "".join(chars), line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        opening = self._peek()
        self._advance()
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == opening:
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            if ch == "\n":
                break
            chars.append(ch)
            self._advance()
        raise DarkParseError(f"Unterminated string literal at {self.filename}:{line}:{col}")

    def _consume_label(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # '@'
        if self._eof or not self._is_identifier_start(self._peek()):
            raise DarkParseError(f"Invalid label name at {self.filename}:{line}:{col}")
        word = self._consume_word()
        if word.type != "IDENT":
            raise DarkParseError(f"Label name '{word.value}' is reserved at {self.filename}:{line}:{col}")
        return Token("LABEL", word.value, line, col)

    def _consume_word(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        while self.index < n and self._is_identifier_part(text[self.index]):
            chars.append(text[self.index])
            self._advance()
        value = "".join(chars)
        lowered = value.lower()
        if lowered in INSTRUCTIONS:
            return Token("INSTRUCTION", lowered, line, col)
        if lowered in KEYWORDS:
            return Token(KEYWORDS[lowered], lowered, line, col)
        return Token("IDENT", value, line, col)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch.isalpha() or ch == "_"

    def _is_identifier_part(self, ch: str) -> bool:
        return ch.isalnum() or ch == "_"

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
