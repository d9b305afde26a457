"""
erase static type syntax so worker source runs under plain node

every rule is a pass over the token list that only ever drops tokens,
so strings, regexes, comments and every value token come out exactly
as they went in. template literals keep their text too, only the code
inside each ${...} substitution is stripped on its own. the passes run
in a fixed order because later ones rely on earlier ones having collapsed
some syntax, e.g. parameter lists are recognized by the `{` or `=>` that
follows them once return types are gone

anything a pass does not recognize is passed through untouched. the
result is best effort: leftover type syntax shows up later as a node
syntax error on stderr
"""

import re
from collections.abc import Callable

from workerbox.lexer import (
    IDENT,
    NUMBER,
    PAIRS,
    PUNCT,
    REGEX,
    STRING,
    TEMPLATE,
    WS,
    Token,
    bracket_pairs,
    is_punct,
    is_word,
    newline_between,
    next_sig,
    prev_sig,
    render,
    template_parts,
    tokenize,
)

# statement heads whose parenthesized group is not a parameter list
CONTROL_WORDS = frozenset({"if", "for", "while", "switch", "with", "case"})

# words that can't end an expression, so a following `as` or `!` isn't a type operator
KEYWORDS = frozenset(
    {
        "break",
        "case",
        "catch",
        "class",
        "const",
        "continue",
        "debugger",
        "default",
        "delete",
        "do",
        "else",
        "export",
        "extends",
        "finally",
        "for",
        "function",
        "if",
        "import",
        "in",
        "instanceof",
        "let",
        "new",
        "of",
        "return",
        "switch",
        "throw",
        "try",
        "typeof",
        "var",
        "void",
        "while",
        "with",
        "yield",
        "await",
        "async",
    }
)

TYPE_PREFIXES = frozenset(
    {"keyof", "typeof", "readonly", "unique", "infer", "asserts", "new"}
)

DECLARATION_MODIFIERS = frozenset({"export", "declare"})

BLANK_LINES_RE = re.compile(r"\n(?:[ \t\r\f\v]*\n){2,}")


"""

type recognizer

"""


def skip_type(tokens: list[Token], i: int) -> int | None:
    """
    recognize a type expression starting at the first significant token
    at or after i. returns the index just past it, None if no type starts there
    """
    i = next_sig(tokens, i)
    if is_punct(tokens, i, "|", "&"):
        i += 1
    end = _skip_type_operand(tokens, i)
    if end is None:
        return None
    while True:
        j = next_sig(tokens, end)
        if not is_punct(tokens, j, "|", "&"):
            return end
        nxt = _skip_type_operand(tokens, j + 1)
        if nxt is None:
            return end
        end = nxt


def _skip_type_operand(tokens: list[Token], i: int) -> int | None:
    i = next_sig(tokens, i)
    if i >= len(tokens):
        return None
    tok = tokens[i]
    if tok.kind == IDENT and tok.text in TYPE_PREFIXES:
        inner = _skip_type_operand(tokens, i + 1)
        if inner is not None:
            return inner
    if tok.kind == IDENT:
        end = _skip_qualified_name(tokens, i)
        j = next_sig(tokens, end)
        if is_punct(tokens, j, "<"):
            close = match_angle(tokens, j)
            if close is None:
                return None
            end = close + 1
        j = next_sig(tokens, end)
        if is_word(tokens, j, "is"):
            predicate = skip_type(tokens, j + 1)
            if predicate is not None:
                end = predicate
    elif tok.kind in (STRING, NUMBER, TEMPLATE):
        end = i + 1
    elif tok.kind == PUNCT and tok.text in PAIRS:
        close = _match(tokens, i)
        if close is None:
            return None
        end = close + 1
        j = next_sig(tokens, end)
        if tok.text == "(" and is_punct(tokens, j, "=>"):
            end = skip_type(tokens, j + 1)
            if end is None:
                return None
    else:
        return None
    # array suffixes and indexed access have to hug the operand
    while is_punct(tokens, end, "["):
        close = _match(tokens, end)
        if close is None:
            return None
        end = close + 1
    return end


def _skip_qualified_name(tokens: list[Token], i: int) -> int:
    end = i + 1
    while True:
        dot = next_sig(tokens, end)
        name = next_sig(tokens, dot + 1)
        if not (is_punct(tokens, dot, ".") and is_word(tokens, name)):
            return end
        end = name + 1


def match_angle(tokens: list[Token], i: int) -> int | None:
    """index of the `>` closing the `<` at i, None if it isn't a type argument list"""
    depth = 0
    j = i
    while j < len(tokens):
        tok = tokens[j]
        if tok.kind == PUNCT:
            if tok.text == "<":
                depth += 1
            elif tok.text == ">":
                depth -= 1
                if depth == 0:
                    return j
            elif tok.text in PAIRS:
                close = _match(tokens, j)
                if close is None:
                    return None
                j = close
            elif tok.text in (";", ")", "]", "}"):
                return None
        j += 1
    return None


def _match(tokens: list[Token], i: int) -> int | None:
    close = PAIRS[tokens[i].text]
    depth = 0
    for j in range(i, len(tokens)):
        if is_punct(tokens, j, tokens[i].text):
            depth += 1
        elif is_punct(tokens, j, close):
            depth -= 1
            if depth == 0:
                return j
    return None


"""

helpers shared by the passes

"""


def _without(tokens: list[Token], drop: set[int]) -> list[Token]:
    if not drop:
        return tokens
    return [tok for i, tok in enumerate(tokens) if i not in drop]


def _declaration_start(tokens: list[Token], i: int) -> int | None:
    """
    index where the declaration whose keyword sits at i begins, including
    export/declare modifiers. None if the keyword doesn't start a statement
    """
    start = i
    p = prev_sig(tokens, start)
    while is_word(tokens, p) and tokens[p].text in DECLARATION_MODIFIERS:
        start = p
        p = prev_sig(tokens, p)
    if p < 0 or is_punct(tokens, p, ";", "{", "}") or newline_between(tokens, p, start):
        return start
    return None


def _ends_expression(tok: Token) -> bool:
    if tok.kind in (NUMBER, STRING, TEMPLATE, REGEX):
        return True
    if tok.kind == IDENT:
        return tok.text not in KEYWORDS
    return tok.kind == PUNCT and tok.text in (")", "]", "}")


def _binding_end(tokens: list[Token], pairs: dict[int, int], i: int) -> int | None:
    """index past a binding name or destructuring pattern at i"""
    if is_word(tokens, i) and tokens[i].text not in KEYWORDS:
        return i + 1
    if is_punct(tokens, i, "{", "[") and i in pairs:
        return pairs[i] + 1
    return None


def _skip_to_comma(
    tokens: list[Token], pairs: dict[int, int], i: int, stop: int
) -> int:
    while i < stop:
        if is_punct(tokens, i, "(", "[", "{") and i in pairs:
            i = pairs[i] + 1
        elif is_punct(tokens, i, ","):
            return i
        else:
            i += 1
    return stop


def _specifier_lists(tokens: list[Token]) -> list[tuple[int, int]]:
    """(open, close) of every `{ ... }` naming bindings in an import or export"""
    pairs = bracket_pairs(tokens)
    found = []
    for i in range(len(tokens)):
        j = next_sig(tokens, i + 1)
        if is_word(tokens, i, "export"):
            if is_word(tokens, j, "type"):
                j = next_sig(tokens, j + 1)
        elif is_word(tokens, i, "import"):
            # type qualifier or default binding, maybe followed by a comma
            if is_word(tokens, j):
                j = next_sig(tokens, j + 1)
                if is_punct(tokens, j, ","):
                    j = next_sig(tokens, j + 1)
        else:
            continue
        if is_punct(tokens, j, "{") and j in pairs:
            found.append((j, pairs[j]))
    return found


"""

passes, in the order they run

"""


def drop_interfaces(tokens: list[Token]) -> list[Token]:
    drop: set[int] = set()
    for i in range(len(tokens)):
        if i in drop or not is_word(tokens, i, "interface"):
            continue
        if not is_word(tokens, next_sig(tokens, i + 1)):
            continue
        start = _declaration_start(tokens, i)
        if start is None:
            continue
        j = next_sig(tokens, i + 1)
        while j < len(tokens) and not is_punct(tokens, j, "{", ";"):
            if is_punct(tokens, j, "<"):
                close = match_angle(tokens, j)
                if close is None:
                    break
                j = close
            j += 1
        if not is_punct(tokens, j, "{"):
            continue
        close = _match(tokens, j)
        if close is not None:
            drop.update(range(start, close + 1))
    return _without(tokens, drop)


def drop_type_aliases(tokens: list[Token]) -> list[Token]:
    drop: set[int] = set()
    for i in range(len(tokens)):
        if i in drop or not is_word(tokens, i, "type"):
            continue
        name = next_sig(tokens, i + 1)
        if not is_word(tokens, name):
            continue
        start = _declaration_start(tokens, i)
        if start is None:
            continue
        j = next_sig(tokens, name + 1)
        if is_punct(tokens, j, "<"):
            close = match_angle(tokens, j)
            if close is None:
                continue
            j = next_sig(tokens, close + 1)
        if not is_punct(tokens, j, "="):
            continue
        end = skip_type(tokens, j + 1)
        if end is None:
            continue
        semi = next_sig(tokens, end)
        if is_punct(tokens, semi, ";"):
            end = semi + 1
        drop.update(range(start, end))
    return _without(tokens, drop)


def drop_type_imports(tokens: list[Token]) -> list[Token]:
    drop: set[int] = set()
    for i in range(len(tokens)):
        if not is_word(tokens, i, "import"):
            continue
        qualifier = next_sig(tokens, i + 1)
        after = next_sig(tokens, qualifier + 1)
        if not is_word(tokens, qualifier, "type"):
            continue
        if not (is_punct(tokens, after, "{", "*") or is_word(tokens, after)):
            continue
        # `import type from "mod"` imports a default binding called type
        source = next_sig(tokens, after + 1)
        if is_word(tokens, after, "from") and source < len(tokens):
            if tokens[source].kind == STRING:
                continue
        j = after
        while j < len(tokens) and tokens[j].kind != STRING:
            if is_punct(tokens, j, ";"):
                break
            j += 1
        end = min(j + 1, len(tokens))
        semi = next_sig(tokens, end)
        if is_punct(tokens, semi, ";"):
            end = semi + 1
        drop.update(range(i, end))
    for open_, close in _specifier_lists(tokens):
        for j in range(open_ + 1, close):
            if not is_word(tokens, j, "type") or j in drop:
                continue
            before = prev_sig(tokens, j)
            after = next_sig(tokens, j + 1)
            if is_punct(tokens, before, "{", ",") and is_word(tokens, after):
                if tokens[after].text != "as":
                    drop.update(range(j, after))
    return _without(tokens, drop)


def drop_function_generics(tokens: list[Token]) -> list[Token]:
    drop: set[int] = set()
    for i in range(len(tokens)):
        if not is_word(tokens, i, "function"):
            continue
        name = next_sig(tokens, i + 1)
        if is_punct(tokens, name, "*"):
            name = next_sig(tokens, name + 1)
        lt = next_sig(tokens, name + 1)
        if not (is_word(tokens, name) and is_punct(tokens, lt, "<")):
            continue
        close = match_angle(tokens, lt)
        if close is None:
            continue
        paren = next_sig(tokens, close + 1)
        if is_punct(tokens, paren, "("):
            drop.update(range(name + 1, paren))
    return _without(tokens, drop)


def drop_return_types(tokens: list[Token]) -> list[Token]:
    pairs = bracket_pairs(tokens)
    drop: set[int] = set()
    for i in range(len(tokens)):
        if not is_punct(tokens, i, ")") or i not in pairs:
            continue
        if is_word(tokens, prev_sig(tokens, pairs[i]), *CONTROL_WORDS):
            continue
        colon = next_sig(tokens, i + 1)
        if not is_punct(tokens, colon, ":"):
            continue
        end = skip_type(tokens, colon + 1)
        if end is None:
            continue
        if is_punct(tokens, next_sig(tokens, end), "{", "=>"):
            drop.update(range(i + 1, end))
    return _without(tokens, drop)


def strip_parameter_types(tokens: list[Token]) -> list[Token]:
    pairs = bracket_pairs(tokens)
    drop: set[int] = set()
    for open_ in range(len(tokens)):
        if not is_punct(tokens, open_, "(") or open_ not in pairs:
            continue
        close = pairs[open_]
        follow = next_sig(tokens, close + 1)
        if is_punct(tokens, follow, "{"):
            if is_word(tokens, prev_sig(tokens, open_), *CONTROL_WORDS):
                continue
        elif not is_punct(tokens, follow, "=>"):
            continue
        if not any(is_punct(tokens, k, ":") for k in range(open_ + 1, close)):
            continue
        drop.update(_parameter_annotations(tokens, pairs, open_, close))
    return _without(tokens, drop)


def _parameter_annotations(
    tokens: list[Token], pairs: dict[int, int], open_: int, close: int
) -> set[int]:
    """indexes of the optional markers and annotations inside one parameter list"""
    drop: set[int] = set()
    j = open_ + 1
    while True:
        j = next_sig(tokens, j)
        if j >= close:
            return drop
        if is_punct(tokens, j, "..."):
            j = next_sig(tokens, j + 1)
        end = _binding_end(tokens, pairs, j)
        if end is not None:
            k = next_sig(tokens, end)
            if is_punct(tokens, k, "?"):
                drop.add(k)
                k = next_sig(tokens, k + 1)
            if is_punct(tokens, k, ":"):
                type_end = skip_type(tokens, k + 1)
                if type_end is not None and type_end <= close:
                    drop.update(range(end, type_end))
                    k = type_end
            j = k
        j = _skip_to_comma(tokens, pairs, j, close) + 1


def strip_variable_types(tokens: list[Token]) -> list[Token]:
    pairs = bracket_pairs(tokens)
    drop: set[int] = set()
    for i in range(len(tokens)):
        if not is_word(tokens, i, "const", "let", "var"):
            continue
        end = _binding_end(tokens, pairs, next_sig(tokens, i + 1))
        if end is None:
            continue
        colon = next_sig(tokens, end)
        if is_punct(tokens, colon, "!"):
            colon = next_sig(tokens, colon + 1)
        if not is_punct(tokens, colon, ":"):
            continue
        type_end = skip_type(tokens, colon + 1)
        if type_end is not None:
            drop.update(range(end, type_end))
    return _without(tokens, drop)


def strip_assertions(tokens: list[Token]) -> list[Token]:
    pairs = bracket_pairs(tokens)
    protected: set[int] = set()
    for open_, close in _specifier_lists(tokens):
        protected.update(range(open_, close + 1))
    drop: set[int] = set()
    for i, tok in enumerate(tokens):
        if i in drop:
            continue
        if is_word(tokens, i, "as") and i not in protected:
            p = prev_sig(tokens, i)
            if p < 0 or not _ends_expression(tokens[p]):
                continue
            target = next_sig(tokens, i + 1)
            if is_word(tokens, target, "const"):
                end = target + 1
            else:
                end = skip_type(tokens, i + 1)
            if end is not None:
                drop.update(range(p + 1, end))
        elif is_punct(tokens, i, "!") and i > 0 and _ends_expression(tokens[i - 1]):
            if is_punct(tokens, i - 1, ")") and is_word(
                tokens, prev_sig(tokens, pairs.get(i - 1, i - 1)), *CONTROL_WORDS
            ):
                continue
            after = next_sig(tokens, i + 1)
            if after < len(tokens) and tokens[after].kind in (
                IDENT,
                NUMBER,
                STRING,
            ):
                continue
            drop.add(i)
    return _without(tokens, drop)


def strip_template_substitutions(tokens: list[Token]) -> list[Token]:
    return [
        Token(
            TEMPLATE,
            "".join(
                strip_types(part) if is_code else part
                for is_code, part in template_parts(tok.text)
            ),
        )
        if tok.kind == TEMPLATE
        else tok
        for tok in tokens
    ]


def collapse_blank_lines(tokens: list[Token]) -> list[Token]:
    merged: list[Token] = []
    for tok in tokens:
        if tok.kind == WS and merged and merged[-1].kind == WS:
            merged[-1] = Token(WS, merged[-1].text + tok.text)
        else:
            merged.append(tok)
    return [
        Token(WS, BLANK_LINES_RE.sub("\n\n", tok.text)) if tok.kind == WS else tok
        for tok in merged
    ]


PASSES: tuple[Callable[[list[Token]], list[Token]], ...] = (
    drop_interfaces,
    drop_type_aliases,
    drop_type_imports,
    drop_function_generics,
    drop_return_types,
    strip_parameter_types,
    strip_variable_types,
    strip_assertions,
    strip_template_substitutions,
    collapse_blank_lines,
)


def strip_types(source: str) -> str:
    tokens = tokenize(source)
    for strip_pass in PASSES:
        tokens = strip_pass(tokens)
    return render(tokens)
