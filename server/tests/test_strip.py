import pytest

from workerbox.strip import strip_types


@pytest.mark.parametrize(
    "src",
    [
        "export async function hello(payload) {\n  return payload;\n}\n",
        "const x = a ? b : c;\nif (a !== b && !flag) { run(); }\n",
        "const obj = { a: 1, b: [1, 2] };\nswitch (x) { case 1: break; }\n",
        "const msg = 'value: number';\nconst t = `x: ${y}`;\n// n: number\n",
    ],
)
def test_untyped_source_is_unchanged(src: str):
    assert strip_types(src) == src


def test_parameter_and_return_types():
    src = "function add(a: number, b: number): number {\n  return a + b;\n}\n"
    assert strip_types(src) == "function add(a, b) {\n  return a + b;\n}\n"


def test_arrow_types():
    src = "export const greet = async (name: string): Promise<string> => {\n  return name;\n};\n"
    assert (
        strip_types(src)
        == "export const greet = async (name) => {\n  return name;\n};\n"
    )


def test_interfaces_removed():
    src = """interface User {
  name: string;
  tags?: string[];
}

export interface Options<T> extends Base {
  value: T;
}

export function hello(user: User): string {
  return user.name;
}
"""
    out = strip_types(src)
    assert "interface" not in out
    assert out.strip() == "export function hello(user) {\n  return user.name;\n}"


def test_type_aliases_removed():
    src = """type Status = "on" | "off";
export type Point = { x: number; y: number };
type Pair<T> = [T, T];
export const x: Status = "on";
"""
    assert strip_types(src).strip() == 'export const x = "on";'


def test_type_imports():
    src = 'import type { Foo } from "./foo";\nimport { type Bar, baz } from "./bar";\n'
    assert strip_types(src) == '\nimport { Bar, baz } from "./bar";\n'


def test_generics():
    src = "function first<T>(items: T[]): T {\n  return items[0];\n}\n"
    assert strip_types(src) == "function first(items) {\n  return items[0];\n}\n"


def test_optional_default_and_rest_parameters():
    src = "function opts(a?: string, b: number = 2, ...rest: string[]) {}\n"
    assert strip_types(src) == "function opts(a, b = 2, ...rest) {}\n"


def test_destructured_and_catch_parameters():
    src = (
        "export const show = ({ a, b }: Props) => a + b;\n"
        "try { run(); } catch (err: unknown) { log(err); }\n"
    )
    assert strip_types(src) == (
        "export const show = ({ a, b }) => a + b;\n"
        "try { run(); } catch (err) { log(err); }\n"
    )


def test_variable_annotations():
    src = "let names: string[] = [];\nconst count: number = 5;\nlet ready!: boolean;\n"
    assert strip_types(src) == "let names = [];\nconst count = 5;\nlet ready;\n"


def test_assertions():
    src = (
        "const s = value as string;\n"
        "const t = [1, 2] as const;\n"
        "const n = obj!.name;\n"
        "if (a !== b && !flag) { x!.y(); }\n"
    )
    assert strip_types(src) == (
        "const s = value;\n"
        "const t = [1, 2];\n"
        "const n = obj.name;\n"
        "if (a !== b && !flag) { x.y(); }\n"
    )


def test_object_types_in_signatures():
    src = (
        "export async function add(p: { a: number; b: number }): Promise<{ sum: number }> {\n"
        "  return { sum: p.a + p.b };\n"
        "}\n"
    )
    assert strip_types(src) == (
        "export async function add(p) {\n  return { sum: p.a + p.b };\n}\n"
    )


def test_template_substitutions():
    src = "export function f(u: any) { return `n=${(u as any).n!.toFixed(1)}`; }"
    assert strip_types(src) == "export function f(u) { return `n=${(u).n.toFixed(1)}`; }"
    assert strip_types("const t = `x: ${y as any}`;") == "const t = `x: ${y}`;"
    assert strip_types("`a ${`b ${c as any}`} d: number`") == "`a ${`b ${c}`} d: number`"


def test_blank_lines_collapsed():
    assert strip_types("a();\n\n\n\nb();\n") == "a();\n\nb();\n"
