"""Tokenizer for ISC brace syntax (``dhcpd.conf`` and ``dhcpd.leases``).

Both files are sequences of statements: ``words...;`` or ``words... { ... }``.
"""
from dataclasses import dataclass, field
from typing import Iterator, Optional

from ..errors import ParseFailure


@dataclass
class Statement:
    """One statement; ``children`` is None for simple ``;``-terminated ones."""
    words: list[str]
    children: Optional[list["Statement"]] = None
    line: int = 0

    @property
    def keyword(self) -> str:
        return self.words[0] if self.words else ""

    def find(self, *keywords: str) -> Iterator["Statement"]:
        """Child statements whose leading words match ``keywords``."""
        for child in self.children or []:
            if child.words[:len(keywords)] == list(keywords):
                yield child

    def first(self, *keywords: str) -> Optional["Statement"]:
        return next(self.find(*keywords), None)


@dataclass
class _Token:
    text: str
    line: int
    quoted: bool = False


def tokenize(text: str) -> list[_Token]:
    """Split into words, quoted strings, ``{``, ``}`` and ``;``; ``#`` starts a comment."""
    tokens: list[_Token] = []
    i, n, line = 0, len(text), 1

    while i < n:
        ch = text[i]
        if ch == "\n":
            line += 1
            i += 1
        elif ch.isspace():
            i += 1
        elif ch == "#":
            while i < n and text[i] != "\n":
                i += 1
        elif ch in "{};":
            tokens.append(_Token(ch, line))
            i += 1
        elif ch == '"':
            j = i + 1
            while j < n and text[j] != '"':
                if text[j] == "\\":
                    j += 1
                j += 1
            if j >= n:
                raise ParseFailure("ISC config", f"unterminated string starting on line {line}")
            tokens.append(_Token(text[i + 1:j], line, quoted=True))
            line += text.count("\n", i, j)
            i = j + 1
        else:
            j = i
            # Commas separate list items ("8.8.8.8, 8.8.4.4") but belong to no word
            while j < n and not text[j].isspace() and text[j] not in '{};"#,':
                j += 1
            if j > i:
                tokens.append(_Token(text[i:j], line))
            if j < n and text[j] == ",":
                j += 1
            i = j

    return tokens


def parse_statements(text: str, source: str = "ISC config") -> tuple[list[Statement], list[str]]:
    """Parse text into a statement tree.

    Returns:
        Tuple of (statements, warnings)

    Raises:
        ParseFailure: On unbalanced braces or unterminated strings
    """
    try:
        tokens = tokenize(text)
    except ParseFailure as e:
        raise ParseFailure(source, e.detail)

    warnings: list[str] = []
    root: list[Statement] = []
    stack: list[list[Statement]] = [root]
    words: list[str] = []
    start_line = 0

    for token in tokens:
        if not words:
            start_line = token.line
        if token.quoted:
            words.append(token.text)
        elif token.text == ";":
            if words:
                stack[-1].append(Statement(words, line=start_line))
            words = []
        elif token.text == "{":
            block = Statement(words, children=[], line=start_line)
            stack[-1].append(block)
            stack.append(block.children)
            words = []
        elif token.text == "}":
            if words:
                warnings.append(f"line {token.line}: statement missing ';' before '}}'")
                stack[-1].append(Statement(words, line=start_line))
                words = []
            if len(stack) == 1:
                raise ParseFailure(source, f"unexpected '}}' on line {token.line}")
            stack.pop()
        else:
            words.append(token.text)

    if len(stack) != 1:
        raise ParseFailure(source, "unbalanced braces: missing '}' at end of input")
    if words:
        warnings.append(f"trailing statement without ';': {' '.join(words)}")

    return root, warnings
