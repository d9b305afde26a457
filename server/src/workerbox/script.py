"""
assemble a standalone node script from worker source

the script holds the stripped user code with export syntax removed,
a registry mapping each exported name to its local definition, and an
entry point run as `node worker.js <functionName> [payloadJson]` that
prints exactly one result marker line
"""

import json

from pydantic import BaseModel, Field

from workerbox.extract import require_function_names
from workerbox.lexer import (
    STRING,
    Token,
    bracket_pairs,
    is_punct,
    is_word,
    next_sig,
    render,
    tokenize,
)
from workerbox.strip import strip_types

WORKER_FILENAME = "worker.js"
MANIFEST_FILENAME = "manifest.json"
RESULT_START = "__RESULT__"
RESULT_END = "__END_RESULT__"

# declarations that stay in the script as locals once `export` is dropped
EXPORTABLE = frozenset({"function", "async", "const", "let", "var", "class"})

HEADER = """\
// Worker script - generated for sandbox execution
// User code (transformed - exports and type annotations removed)
"""

# names are prefixed so they cannot clash with user definitions
ENTRYPOINT = """\
// Main execution
async function __workerMain() {
  const functionName = process.argv[2];
  const payloadJson = process.argv[3] || '{}';

  if (!functionName) {
    console.error('Usage: node worker.js <functionName> [payloadJson]');
    process.exit(1);
  }

  const func = Object.prototype.hasOwnProperty.call(__workerFunctions, functionName)
    ? __workerFunctions[functionName]
    : undefined;
  if (!func) {
    console.error(
      "Function '" + functionName + "' not found. Available: " +
        Object.keys(__workerFunctions).join(', ')
    );
    process.exit(1);
  }

  try {
    const payload = JSON.parse(payloadJson);
    const result = await func(payload);
    const value = result === undefined ? null : result;

    // Output result with markers so it can be parsed
    console.log('__RESULT__' + JSON.stringify(value) + '__END_RESULT__');
  } catch (error) {
    const message = error && error.message ? error.message : String(error);
    console.error('Function error:', message);
    console.log(
      '__RESULT__' + JSON.stringify({ __error: true, message: message }) + '__END_RESULT__'
    );
    process.exitCode = 1;
  }
}

__workerMain();
"""


class WorkerScript(BaseModel):
    script: str = Field(description="generated node script")
    functions: list[str] = Field(description="exported function names, in order")

    @property
    def manifest(self) -> str:
        return render_manifest(self.functions)

    def files(self) -> dict[str, str]:
        """
        files to write into a runtime, keyed by relative path
        """
        return {WORKER_FILENAME: self.script, MANIFEST_FILENAME: self.manifest}


def render_manifest(functions: list[str]) -> str:
    return json.dumps({"functions": functions}, indent=2)


def remove_exports(source: str) -> str:
    """
    turn module source into plain script source

    `export` in front of a declaration and `export default` are dropped,
    leaving the declaration or expression behind. `export { ... }` and
    `export * from "..."` statements are dropped whole
    """
    tokens = tokenize(source)
    pairs = bracket_pairs(tokens)
    drop: set[int] = set()
    for i in range(len(tokens)):
        if not is_word(tokens, i, "export"):
            continue
        j = next_sig(tokens, i + 1)
        if is_word(tokens, j, *EXPORTABLE):
            drop.update(range(i, j))
        elif is_word(tokens, j, "default"):
            drop.update(range(i, next_sig(tokens, j + 1)))
        elif is_punct(tokens, j, "{", "*"):
            end = _export_list_end(tokens, pairs, j)
            if end is not None:
                drop.update(range(i, end + 1))
    return render([tok for i, tok in enumerate(tokens) if i not in drop])


def _export_list_end(
    tokens: list[Token], pairs: dict[int, int], i: int
) -> int | None:
    """last token of `{ a, b } [from "mod"] [;]` or `* [as ns] from "mod" [;]`"""
    if is_punct(tokens, i, "{"):
        end = pairs.get(i)
        if end is None:
            return None
    else:
        end = i
        k = next_sig(tokens, end + 1)
        if is_word(tokens, k, "as"):
            end = next_sig(tokens, k + 1)
    k = next_sig(tokens, end + 1)
    source = next_sig(tokens, k + 1)
    if (
        is_word(tokens, k, "from")
        and source < len(tokens)
        and tokens[source].kind == STRING
    ):
        end = source
    elif not is_punct(tokens, i, "{"):
        return None
    k = next_sig(tokens, end + 1)
    if is_punct(tokens, k, ";"):
        end = k
    return end


def render_registry(functions: list[str]) -> str:
    entries = "".join(f"  {json.dumps(name)}: {name},\n" for name in functions)
    return f"// Function registry\nconst __workerFunctions = {{\n{entries}}};\n"


def render_script(code: str, functions: list[str]) -> str:
    return "\n".join(
        [
            HEADER + code.rstrip("\n") + "\n",
            render_registry(functions),
            ENTRYPOINT,
        ]
    )


def generate_worker_script(source: str) -> WorkerScript:
    """
    build the worker script for a source bundle
    raises ExtractionError before generating anything if nothing is exported
    """
    functions = require_function_names(source)
    code = remove_exports(strip_types(source))
    return WorkerScript(script=render_script(code, functions), functions=functions)
