import pytest

from workerbox.errors import ExtractionError
from workerbox.extract import (
    NO_EXPORTS_MESSAGE,
    extract_function_names,
    require_function_names,
)
from workerbox.lexer import (
    COMMENT,
    REGEX,
    STRING,
    TEMPLATE,
    render,
    template_parts,
    tokenize,
)


def test_tokenize_is_lossless():
    src = """
// comment with 'quote
const re = /a\\/b[/]c/g;
const t = `outer ${ `inner ${x}` } done`;
const d = a / b / c;
/* block
   comment */ export async function f<T>(x: T): Promise<Array<T>> { return x!; }
"""
    tokens = tokenize(src)
    assert render(tokens) == src
    kinds = {tok.text: tok.kind for tok in tokens}
    assert kinds["// comment with 'quote"] == COMMENT
    assert kinds["/a\\/b[/]c/g"] == REGEX
    assert kinds["`outer ${ `inner ${x}` } done`"] == TEMPLATE
    assert "/ b" not in kinds


def test_tokenize_unterminated():
    src = "const s = 'oops\nconst t = 1; /* never closed"
    tokens = tokenize(src)
    assert render(tokens) == src
    assert tokens[-1].kind == COMMENT
    assert [tok.text for tok in tokens if tok.kind == STRING] == ["'oops"]


def test_template_parts():
    assert template_parts("`outer ${ `inner ${x}` } done`") == [
        (False, "`outer ${"),
        (True, " `inner ${x}` "),
        (False, "} done`"),
    ]
    assert template_parts("`a \\${b}`") == [(False, "`a \\${b}`")]
    assert template_parts("`plain`") == [(False, "`plain`")]


def test_extract_all_forms():
    src = """
export async function hello(payload) {
  return { hello: payload.name };
}

export function plain() {}

export const add = (a, b) => a + b;
export const later = async (payload) => payload;
export const mul = function (a, b) { return a * b; };
export const slow = async function (payload) { return payload; };
"""
    assert extract_function_names(src) == [
        "hello",
        "plain",
        "add",
        "later",
        "mul",
        "slow",
    ]


def test_extract_groups_by_form():
    src = """
export const arrow = () => 1;
export const expr = function () { return 2; };
export function declared() { return 3; }
"""
    assert extract_function_names(src) == ["declared", "arrow", "expr"]


def test_extract_deduplicates():
    src = """
export function twice() {}
export function twice() {}
"""
    assert extract_function_names(src) == ["twice"]


def test_extract_ignores_non_functions():
    src = """
function hidden() {}
const local = () => 1;
export const value = 42;
export const config = { name: "x" };
export default function () {}
export class Thing {}
"""
    assert extract_function_names(src) == []


def test_extract_ignores_comments_and_strings():
    src = """
// export function commented() {}
/* export const blocked = () => 1; */
const quoted = "export function quoted() {}";
const templated = `export function templated() {}`;
export function real() {}
"""
    assert extract_function_names(src) == ["real"]


def test_extract_typed_source():
    src = """
export function first<T>(items: T[]): T {
  return items[0];
}
export const greet = async (name: string): Promise<string> => `hi ${name}`;
"""
    assert extract_function_names(src) == ["first", "greet"]


def test_require_function_names():
    assert require_function_names("export function ok() {}") == ["ok"]
    with pytest.raises(ExtractionError) as exc:
        require_function_names("const x = 1;")
    assert str(exc.value) == NO_EXPORTS_MESSAGE
