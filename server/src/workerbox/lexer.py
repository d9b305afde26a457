"""
lossless tokenizer for worker source

recognizes just enough of the language for the export scanner and the
type stripper. joining the text of every token gives back the input
exactly, so rewrites are done by dropping tokens and joining the rest
"""

import re
from typing import NamedTuple

WS = "ws"
COMMENT = "comment"
STRING = "string"
TEMPLATE = "template"
REGEX = "regex"
NUMBER = "number"
IDENT = "ident"
PUNCT = "punct"

TRIVIA = frozenset({WS, COMMENT})
PAIRS = {"(": ")", "[": "]", "{": "}"}

_WS_RE = re.compile(r"\s+")
_IDENT_RE = re.compile(r"[A-Za-z_$][\w$]*")
_NUMBER_RE = re.compile(
    r"(?:0[xXbBoO][0-9a-fA-F_]+|(?:\d[\d_]*\.?[\d_]*|\.\d[\d_]*)(?:[eE][+-]?\d+)?)n?"
)
# `>` is never merged with a following `>` so nested generics close one at a time
_PUNCT_RE = re.compile(
    r"\.\.\.|\?\?=|\?\?|\?\.(?!\d)|===|!==|\*\*=|=>|==|!=|<=|>=|&&=|\|\|=|&&|\|\|"
    r"|\*\*|\+\+|--|<<=?|[-+*/%&|^]="
)

# keywords after which a `/` starts a regex literal rather than a division
_REGEX_PREFIX_WORDS = frozenset(
    {
        "return",
        "typeof",
        "instanceof",
        "in",
        "of",
        "new",
        "delete",
        "void",
        "throw",
        "case",
        "do",
        "else",
        "yield",
        "await",
    }
)


class Token(NamedTuple):
    kind: str
    text: str


def tokenize(text: str) -> list[Token]:
    """
    split source text into tokens
    never fails: anything unrecognized becomes a one character punct token,
    unterminated strings stop at end of line, unterminated comments at end of input
    """
    tokens: list[Token] = []
    prev: Token | None = None
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c.isspace():
            kind, end = WS, _WS_RE.match(text, i).end()
        elif text.startswith("//", i):
            end = text.find("\n", i)
            kind, end = COMMENT, n if end < 0 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            kind, end = COMMENT, n if end < 0 else end + 2
        elif c in "'\"":
            kind, end = STRING, _scan_string(text, i)
        elif c == "`":
            kind, end = TEMPLATE, _scan_template(text, i)
        elif c == "/" and _regex_allowed(prev) and _scan_regex(text, i):
            kind, end = REGEX, _scan_regex(text, i)
        elif _IDENT_RE.match(text, i):
            kind, end = IDENT, _IDENT_RE.match(text, i).end()
        elif c.isdigit() or (c == "." and text[i + 1 : i + 2].isdigit()):
            kind, end = NUMBER, _NUMBER_RE.match(text, i).end()
        elif _PUNCT_RE.match(text, i):
            kind, end = PUNCT, _PUNCT_RE.match(text, i).end()
        else:
            kind, end = PUNCT, i + 1
        tok = Token(kind, text[i:end])
        tokens.append(tok)
        if kind not in TRIVIA:
            prev = tok
        i = end
    return tokens


def render(tokens: list[Token]) -> str:
    return "".join(tok.text for tok in tokens)


def _regex_allowed(prev: Token | None) -> bool:
    if prev is None:
        return True
    if prev.kind in (NUMBER, STRING, TEMPLATE, REGEX):
        return False
    if prev.kind == IDENT:
        return prev.text in _REGEX_PREFIX_WORDS
    return prev.text not in (")", "]", "}")


def _scan_string(text: str, i: int) -> int:
    quote = text[i]
    j = i + 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            j += 2
        elif c == quote:
            return j + 1
        elif c == "\n":
            return j
        else:
            j += 1
    return len(text)


def _scan_template(text: str, i: int) -> int:
    j = i + 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            j += 2
        elif c == "`":
            return j + 1
        elif c == "$" and text.startswith("{", j + 1):
            j = _scan_substitution(text, j + 2)
        else:
            j += 1
    return len(text)


def template_parts(text: str) -> list[tuple[bool, str]]:
    """
    split the text of a template token into (is_code, text) parts, the code
    parts being the insides of its ${...} substitutions
    """
    parts = []
    start = 0
    j = 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            j += 2
        elif c == "$" and text.startswith("{", j + 1):
            parts.append((False, text[start : j + 2]))
            end = _scan_substitution(text, j + 2)
            start = end - 1 if end > j + 2 and text[end - 1] == "}" else end
            parts.append((True, text[j + 2 : start]))
            j = end
        else:
            j += 1
    parts.append((False, text[start:]))
    return parts


def _scan_substitution(text: str, i: int) -> int:
    """scan past the brace closing a ${...} template substitution"""
    depth = 1
    j = i
    while j < len(text):
        c = text[j]
        if c in "'\"":
            j = _scan_string(text, j)
        elif c == "`":
            j = _scan_template(text, j)
        elif text.startswith("//", j):
            end = text.find("\n", j)
            j = len(text) if end < 0 else end
        elif text.startswith("/*", j):
            end = text.find("*/", j + 2)
            j = len(text) if end < 0 else end + 2
        else:
            j += 1
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    return j
    return len(text)


def _scan_regex(text: str, i: int) -> int | None:
    """end of the regex literal starting at i, None if there isn't one"""
    in_class = False
    j = i + 1
    while j < len(text):
        c = text[j]
        if c == "\\":
            j += 2
            continue
        if c == "\n":
            return None
        if in_class:
            in_class = c != "]"
        elif c == "[":
            in_class = True
        elif c == "/":
            j += 1
            while j < len(text) and (text[j].isalnum() or text[j] in "_$"):
                j += 1
            return j
        j += 1
    return None


"""

walking helpers

"""


def next_sig(tokens: list[Token], i: int) -> int:
    """index of the first non-trivia token at or after i, len(tokens) if none"""
    while i < len(tokens) and tokens[i].kind in TRIVIA:
        i += 1
    return i


def prev_sig(tokens: list[Token], i: int) -> int:
    """index of the last non-trivia token before i, -1 if none"""
    i -= 1
    while i >= 0 and tokens[i].kind in TRIVIA:
        i -= 1
    return i


def is_punct(tokens: list[Token], i: int, *texts: str) -> bool:
    return 0 <= i < len(tokens) and tokens[i].kind == PUNCT and tokens[i].text in texts


def is_word(tokens: list[Token], i: int, *texts: str) -> bool:
    if not 0 <= i < len(tokens) or tokens[i].kind != IDENT:
        return False
    return not texts or tokens[i].text in texts


def bracket_pairs(tokens: list[Token]) -> dict[int, int]:
    """
    map the index of every balanced (, [ and { to its closing bracket and back
    unbalanced brackets are left out
    """
    pairs: dict[int, int] = {}
    stack: list[int] = []
    for i, tok in enumerate(tokens):
        if tok.kind != PUNCT:
            continue
        if tok.text in PAIRS:
            stack.append(i)
        elif tok.text in (")", "]", "}"):
            if stack and PAIRS[tokens[stack[-1]].text] == tok.text:
                j = stack.pop()
                pairs[j] = i
                pairs[i] = j
            else:
                stack.clear()
    return pairs


def newline_between(tokens: list[Token], start: int, end: int) -> bool:
    return any(
        "\n" in tokens[k].text for k in range(start, end) if tokens[k].kind in TRIVIA
    )
