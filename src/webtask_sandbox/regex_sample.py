"""Deterministic "lowest" string generation for regular expressions.

`lowest_match` walks a parsed pattern and always takes the smallest choice:
the first alternation branch, the minimum repeat count, and the lowest
printable code point a character class allows. Identical patterns therefore
always produce identical strings, which is what container derivation from a
`/regex/` tenant claim relies on.

Anchors, word boundaries, lookarounds and inline flags emit nothing, so a
lookaround can leave the result unmatched; `tokens.resolve_container` checks
the result with `re.fullmatch`. Repeat counts and output length are bounded.
"""

from __future__ import annotations

from dataclasses import dataclass, field

_MAX_CODEPOINT = 0x10FFFF
_PRINTABLE_LOW = 32
_PRINTABLE_HIGH = 126

_DIGIT = ((48, 57),)
_WORD = ((48, 57), (65, 90), (95, 95), (97, 122))
_SPACE = ((9, 13), (32, 32))

_CONTROL_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "f": "\f",
    "v": "\v",
    "a": "\a",
}
_ZERO_WIDTH_ESCAPES = frozenset("bBAZzG")
_INLINE_FLAGS = frozenset("aiLmsux-")
_OCTAL_DIGITS = frozenset("01234567")

# Bounds on generated text; claims exceeding them are rejected.
_MAX_REPEAT = 256
_MAX_LENGTH = 1024

Ranges = tuple[tuple[int, int], ...]


def _complement(ranges: Ranges) -> Ranges:
    result: list[tuple[int, int]] = []
    cursor = 0
    for low, high in sorted(ranges):
        if low > cursor:
            result.append((cursor, low - 1))
        cursor = max(cursor, high + 1)
    if cursor <= _MAX_CODEPOINT:
        result.append((cursor, _MAX_CODEPOINT))
    return tuple(result)


@dataclass(frozen=True, slots=True)
class _CharSet:
    ranges: Ranges
    negated: bool = False

    def contains(self, codepoint: int) -> bool:
        inside = any(low <= codepoint <= high for low, high in self.ranges)
        return inside != self.negated

    def resolved(self) -> Ranges:
        return _complement(self.ranges) if self.negated else self.ranges

    def lowest(self) -> str:
        for codepoint in range(_PRINTABLE_LOW, _PRINTABLE_HIGH + 1):
            if self.contains(codepoint):
                return chr(codepoint)
        ranges = self.resolved()
        if not ranges:
            raise ValueError("character class matches nothing")
        return chr(min(low for low, _ in ranges))


_DOT = _CharSet(ranges=((10, 10),), negated=True)


@dataclass(frozen=True, slots=True)
class _Literal:
    text: str


@dataclass(frozen=True, slots=True)
class _Class:
    charset: _CharSet


@dataclass(frozen=True, slots=True)
class _Empty:
    pass


@dataclass(frozen=True, slots=True)
class _Sequence:
    items: tuple[object, ...]


@dataclass(frozen=True, slots=True)
class _Alternation:
    branches: tuple[object, ...]


@dataclass(frozen=True, slots=True)
class _Group:
    body: object
    index: int | None = None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class _Repeat:
    body: object
    minimum: int


@dataclass(frozen=True, slots=True)
class _Backref:
    ref: int | str


_EMPTY = _Empty()


@dataclass
class _Parser:
    pattern: str
    pos: int = 0
    group_count: int = 0
    names: set[str] = field(default_factory=set)

    # ------------------------------------------------------------------
    # structure

    def parse(self) -> object:
        node = self._alternation()
        if self.pos < len(self.pattern):
            raise ValueError(f"unbalanced parenthesis at position {self.pos}")
        return node

    def _alternation(self) -> object:
        branches = [self._sequence()]
        while self._peek() == "|":
            self.pos += 1
            branches.append(self._sequence())
        if len(branches) == 1:
            return branches[0]
        return _Alternation(tuple(branches))

    def _sequence(self) -> object:
        items: list[object] = []
        while self.pos < len(self.pattern) and self.pattern[self.pos] not in "|)":
            items.append(self._quantified(self._atom()))
        return _Sequence(tuple(items))

    def _atom(self) -> object:
        char = self._next()
        if char == "(":
            return self._group()
        if char == "[":
            return _Class(self._char_class())
        if char == ".":
            return _Class(_DOT)
        if char in "^$":
            return _EMPTY
        if char == "\\":
            return self._escape()
        if char in "*+?":
            raise ValueError(f"nothing to repeat at position {self.pos - 1}")
        return _Literal(char)

    def _quantified(self, atom: object) -> object:
        minimum = self._quantifier()
        if minimum is None:
            return atom
        if self._peek() in ("?", "+"):
            self.pos += 1
        if self._quantifier_ahead():
            raise ValueError(f"multiple repeat at position {self.pos}")
        return _Repeat(atom, minimum)

    def _quantifier(self) -> int | None:
        char = self._peek()
        if char in ("*", "?"):
            self.pos += 1
            return 0
        if char == "+":
            self.pos += 1
            return 1
        if char == "{":
            bounds = self._brace_bounds(self.pos)
            if bounds is None:
                return None
            minimum, end = bounds
            if minimum > _MAX_REPEAT:
                raise ValueError(f"repeat count {minimum} exceeds {_MAX_REPEAT}")
            self.pos = end
            return minimum
        return None

    def _quantifier_ahead(self) -> bool:
        char = self._peek()
        if char in ("*", "+", "?"):
            return True
        return char == "{" and self._brace_bounds(self.pos) is not None

    def _brace_bounds(self, start: int) -> tuple[int, int] | None:
        close = self.pattern.find("}", start)
        if close == -1:
            return None
        body = self.pattern[start + 1 : close]
        low, _, high = body.partition(",")
        if not low.isdigit() or (high and not high.isdigit()):
            return None
        if high and int(high) < int(low):
            raise ValueError(f"min repeat greater than max repeat at position {start}")
        return int(low), close + 1

    def _group(self) -> object:
        if not self.pattern.startswith("?", self.pos):
            self.group_count += 1
            return self._group_body(index=self.group_count)
        self.pos += 1
        rest = self.pattern[self.pos :]
        if rest.startswith(":"):
            self.pos += 1
            return self._group_body()
        if rest.startswith(("=", "!", "<=", "<!")):
            self.pos += 2 if rest.startswith("<") else 1
            self._group_body()
            return _EMPTY
        if rest.startswith("#"):
            close = self.pattern.find(")", self.pos)
            if close == -1:
                raise ValueError("missing ), unterminated comment")
            self.pos = close + 1
            return _EMPTY
        if rest.startswith("P="):
            self.pos += 2
            name = self._read_until(")")
            if name not in self.names:
                raise ValueError(f"unknown group name {name!r}")
            return _Backref(name)
        if rest.startswith(("P<", "<")):
            self.pos += 2 if rest.startswith("P") else 1
            name = self._read_until(">")
            if not name.isidentifier():
                raise ValueError(f"bad character in group name {name!r}")
            self.group_count += 1
            index = self.group_count
            self.names.add(name)
            return self._group_body(index=index, name=name)
        flags = ""
        while self._peek() and self._peek() in _INLINE_FLAGS:
            flags += self._next()
        if flags and self._peek() == ")":
            self.pos += 1
            return _EMPTY
        if flags and self._peek() == ":":
            self.pos += 1
            return self._group_body()
        raise ValueError(f"unknown extension ?{self._peek()} at position {self.pos}")

    def _group_body(self, index: int | None = None, name: str | None = None) -> _Group:
        body = self._alternation()
        if self._peek() != ")":
            raise ValueError("missing ), unterminated subpattern")
        self.pos += 1
        return _Group(body, index=index, name=name)

    # ------------------------------------------------------------------
    # escapes and classes

    def _escape(self) -> object:
        char = self._next()
        if char in "dwsDWS":
            return _Class(_shorthand(char))
        if char in _ZERO_WIDTH_ESCAPES:
            return _EMPTY
        ahead = self.pattern[self.pos : self.pos + 2]
        if char == "0" or (
            char in _OCTAL_DIGITS and len(ahead) == 2 and set(ahead) <= _OCTAL_DIGITS
        ):
            return _Literal(self._octal(char))
        if char.isdigit():
            digits = char
            while self._peek().isdigit() and int(digits + self._peek()) <= self.group_count:
                digits += self._next()
            return _Backref(int(digits))
        if char == "k" and self._peek() == "<":
            self.pos += 1
            return _Backref(self._read_until(">"))
        return _Literal(self._escaped_char(char))

    def _escaped_char(self, char: str) -> str:
        if char in _CONTROL_ESCAPES:
            return _CONTROL_ESCAPES[char]
        if char in _OCTAL_DIGITS:
            return self._octal(char)
        if char == "x":
            return chr(int(self._read_hex(2), 16))
        if char == "u":
            return chr(int(self._read_hex(4), 16))
        if char == "U":
            return chr(int(self._read_hex(8), 16))
        if char.isalnum():
            raise ValueError(f"bad escape \\{char}")
        return char

    def _char_class(self) -> _CharSet:
        negated = self._peek() == "^"
        if negated:
            self.pos += 1
        ranges: list[tuple[int, int]] = []
        first = True
        while True:
            if self.pos >= len(self.pattern):
                raise ValueError("unterminated character set")
            char = self._next()
            if char == "]" and not first:
                break
            first = False
            if char == "\\":
                escaped = self._next()
                if escaped in "dwsDWS":
                    ranges.extend(_shorthand(escaped).resolved())
                    continue
                low = ord("\b") if escaped == "b" else ord(self._escaped_char(escaped))
            else:
                low = ord(char)
            if self._peek() == "-" and self.pattern[self.pos + 1 : self.pos + 2] not in ("]", ""):
                self.pos += 1
                end_char = self._next()
                if end_char == "\\":
                    high = ord(self._escaped_char(self._next()))
                else:
                    high = ord(end_char)
                if high < low:
                    raise ValueError(f"bad character range {chr(low)}-{chr(high)}")
                ranges.append((low, high))
            else:
                ranges.append((low, low))
        return _CharSet(ranges=tuple(ranges), negated=negated)

    # ------------------------------------------------------------------
    # cursor helpers

    def _peek(self) -> str:
        return self.pattern[self.pos] if self.pos < len(self.pattern) else ""

    def _next(self) -> str:
        if self.pos >= len(self.pattern):
            raise ValueError("unexpected end of pattern")
        char = self.pattern[self.pos]
        self.pos += 1
        return char

    def _read_until(self, terminator: str) -> str:
        end = self.pattern.find(terminator, self.pos)
        if end == -1:
            raise ValueError(f"missing {terminator}")
        text = self.pattern[self.pos : end]
        self.pos = end + 1
        return text

    def _octal(self, first: str) -> str:
        digits = first
        while len(digits) < 3 and self._peek() and self._peek() in _OCTAL_DIGITS:
            digits += self._next()
        value = int(digits, 8)
        if value > 0o377:
            raise ValueError(f"octal escape value \\{digits} outside of range 0-0o377")
        return chr(value)

    def _read_hex(self, width: int) -> str:
        text = self.pattern[self.pos : self.pos + width]
        if len(text) != width or any(c not in "0123456789abcdefABCDEF" for c in text):
            raise ValueError(f"incomplete escape at position {self.pos}")
        self.pos += width
        return text


def _shorthand(char: str) -> _CharSet:
    ranges = {"d": _DIGIT, "w": _WORD, "s": _SPACE}[char.lower()]
    return _CharSet(ranges=ranges, negated=char.isupper())


def _bounded(text: str) -> str:
    if len(text) > _MAX_LENGTH:
        raise ValueError(f"generated text exceeds {_MAX_LENGTH} characters")
    return text


def _emit(node: object, captures: dict[int | str, str]) -> str:
    if isinstance(node, _Literal):
        return node.text
    if isinstance(node, _Class):
        return node.charset.lowest()
    if isinstance(node, _Sequence):
        return _bounded("".join(_emit(item, captures) for item in node.items))
    if isinstance(node, _Alternation):
        return _emit(node.branches[0], captures)
    if isinstance(node, _Group):
        text = _emit(node.body, captures)
        if node.index is not None:
            captures[node.index] = text
        if node.name is not None:
            captures[node.name] = text
        return text
    if isinstance(node, _Repeat):
        return _bounded("".join(_emit(node.body, captures) for _ in range(node.minimum)))
    if isinstance(node, _Backref):
        if node.ref not in captures:
            raise ValueError(f"backreference to group {node.ref!r} that does not participate")
        return captures[node.ref]
    return ""


def lowest_match(pattern: str) -> str:
    """Return the lowest-valued string matched by `pattern`.

    Raises `ValueError` for syntax this generator does not understand.
    """

    tree = _Parser(pattern).parse()
    return _emit(tree, {})


__all__ = ["lowest_match"]
