"""
find the functions a worker source exports

recognized forms:

    export [async] function name(
    export const name = [async] (
    export const name = [async] function

each form is scanned over the whole token stream on its own, the results
are concatenated in that order and de-duplicated keeping the first sighting.
comments, strings and template literals are single tokens, so exports
mentioned inside them are never picked up
"""

from collections.abc import Callable

from workerbox.errors import ExtractionError
from workerbox.lexer import (
    Token,
    is_punct,
    is_word,
    next_sig,
    tokenize,
)

NO_EXPORTS_MESSAGE = (
    "No exported functions found in worker code. Functions must be exported "
    '(e.g., "export async function myFunc(payload) { ... }")'
)


def _function_declaration(tokens: list[Token], i: int) -> str | None:
    j = next_sig(tokens, i + 1)
    if is_word(tokens, j, "async"):
        j = next_sig(tokens, j + 1)
    if not is_word(tokens, j, "function"):
        return None
    name = next_sig(tokens, j + 1)
    if not is_word(tokens, name):
        return None
    j = next_sig(tokens, name + 1)
    if is_punct(tokens, j, "<"):
        j = _skip_angle(tokens, j)
    return tokens[name].text if is_punct(tokens, j, "(") else None


def _const_initializer(tokens: list[Token], i: int) -> tuple[str, int] | None:
    """name and initializer start of `export const name =`"""
    j = next_sig(tokens, i + 1)
    if not is_word(tokens, j, "const"):
        return None
    name = next_sig(tokens, j + 1)
    if not is_word(tokens, name):
        return None
    j = next_sig(tokens, name + 1)
    if not is_punct(tokens, j, "="):
        return None
    return tokens[name].text, next_sig(tokens, j + 1)


def _arrow_const(tokens: list[Token], i: int) -> str | None:
    found = _const_initializer(tokens, i)
    if found is None:
        return None
    name, j = found
    if is_word(tokens, j, "async"):
        j = next_sig(tokens, j + 1)
    return name if is_punct(tokens, j, "(") else None


def _function_const(tokens: list[Token], i: int) -> str | None:
    found = _const_initializer(tokens, i)
    if found is None:
        return None
    name, j = found
    if is_word(tokens, j, "async"):
        j = next_sig(tokens, j + 1)
    return name if is_word(tokens, j, "function") else None


def _skip_angle(tokens: list[Token], i: int) -> int:
    """index of the first significant token after the <...> group at i"""
    depth = 0
    for j in range(i, len(tokens)):
        if is_punct(tokens, j, "<"):
            depth += 1
        elif is_punct(tokens, j, ">"):
            depth -= 1
            if depth == 0:
                return next_sig(tokens, j + 1)
        elif is_punct(tokens, j, ";", "{", ")"):
            break
    return len(tokens)


SCANS: tuple[Callable[[list[Token], int], str | None], ...] = (
    _function_declaration,
    _arrow_const,
    _function_const,
)


def extract_function_names(source: str) -> list[str]:
    """
    exported function names in first-seen order, without duplicates
    """
    tokens = tokenize(source)
    exports = [i for i, tok in enumerate(tokens) if is_word(tokens, i, "export")]
    names: list[str] = []
    for scan in SCANS:
        for i in exports:
            name = scan(tokens, i)
            if name is not None:
                names.append(name)
    return list(dict.fromkeys(names))


def require_function_names(source: str) -> list[str]:
    """
    like extract_function_names but rejects source with nothing to invoke
    """
    names = extract_function_names(source)
    if not names:
        raise ExtractionError(NO_EXPORTS_MESSAGE)
    return names
