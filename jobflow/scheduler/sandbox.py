"""Sandboxed script execution for custom_code jobs and steps.

The executor only relies on the ScriptRunner protocol: run this code with
this input, bounded by a timeout, return a value or raise. The default
implementation starts a fresh isolated interpreter (python -I) per script
with an empty environment, so scripts share no memory, imports or
credentials with the service process. Inside the child the script is
compiled with RestrictedPython and runs against a whitelist of builtins:
there is no import statement, no open(), and no access to underscore
attributes, so a script cannot reach the filesystem or the datastore.

Script contract:
- `input` is bound to the JSON-decoded input value.
- The value of the final expression statement is the result; if the script
  ends with a statement instead, the variable `result` is used.
- print() output is captured and logged line by line.
- The result must be JSON-serializable (non-serializable values are
  converted with str()).
"""

import json
import logging
import os
import subprocess
import sys
from typing import Any, Optional, Protocol, runtime_checkable

from jobflow.errors import ScriptRuntimeError, ScriptTimeoutError

logger = logging.getLogger(__name__)

SCRIPT_TIMEOUT_SECONDS = float(os.environ.get("SCRIPT_TIMEOUT_SECONDS", "5"))

# Runs inside the child interpreter. Reads {"code", "input"} from stdin and
# writes {"ok": true, "result": ...} or {"ok": false, "error": ...} to stdout.
_BOOTSTRAP = r'''
import ast
import builtins
import json
import operator
import sys

from RestrictedPython import compile_restricted, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

_INPLACE_OPS = {
    "+=": operator.iadd, "-=": operator.isub, "*=": operator.imul,
    "/=": operator.itruediv, "//=": operator.ifloordiv, "%=": operator.imod,
    "**=": operator.ipow, "<<=": operator.ilshift, ">>=": operator.irshift,
    "|=": operator.ior, "&=": operator.iand, "^=": operator.ixor,
}


class _StderrPrint:
    def __init__(self, _getattr_=None):
        pass

    def _call_print(self, *objects, **kwargs):
        kwargs["file"] = sys.stderr
        print(*objects, **kwargs)


def _builtins():
    allowed = {}
    allowed.update(safe_builtins)
    allowed.update(limited_builtins)
    allowed.update(utility_builtins)
    for name in ("dict", "list", "set", "sum", "min", "max", "enumerate",
                 "map", "filter", "any", "all", "reversed"):
        allowed[name] = getattr(builtins, name)
    return allowed


def _as_result_assignment(code):
    tree = ast.parse(code, "<script>", "exec")
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body.pop()
        tree.body.append(ast.Assign(targets=[ast.Name(id="result", ctx=ast.Store())], value=last.value))
    return ast.unparse(ast.fix_missing_locations(tree))


def _main():
    request = json.loads(sys.stdin.read())
    out = sys.stdout
    sys.stdout = sys.stderr
    namespace = {
        "__builtins__": _builtins(),
        "__name__": "__script__",
        "input": request["input"],
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": lambda op, x, y: _INPLACE_OPS[op](x, y),
        "_apply_": lambda f, *args, **kwargs: f(*args, **kwargs),
        "_print_": _StderrPrint,
    }
    try:
        exec(compile_restricted(_as_result_assignment(request["code"]), "<script>", "exec"), namespace)
        text = json.dumps({"ok": True, "result": namespace.get("result")}, default=str)
    except BaseException as e:
        text = json.dumps({"ok": False, "error": f"{type(e).__name__}: {e}"})
    out.write(text)
    out.flush()


_main()
'''


@runtime_checkable
class ScriptRunner(Protocol):
    """Protocol for script execution backends."""

    def run(
        self,
        code: str,
        input_value: Any = None,
        *,
        timeout: Optional[float] = None,
        label: str = "",
    ) -> Any: ...


class SubprocessScriptRunner:
    """Runs each script in a short-lived isolated Python subprocess."""

    def __init__(self, timeout: float = SCRIPT_TIMEOUT_SECONDS, python: Optional[str] = None):
        self.timeout = timeout
        self.python = python or sys.executable

    def run(
        self,
        code: str,
        input_value: Any = None,
        *,
        timeout: Optional[float] = None,
        label: str = "",
    ) -> Any:
        timeout = timeout or self.timeout
        label = label or "script"
        request = json.dumps({"code": code, "input": input_value}, default=str)

        try:
            proc = subprocess.run(
                [self.python, "-I", "-c", _BOOTSTRAP],
                input=request,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env={},
            )
        except subprocess.TimeoutExpired as e:
            raise ScriptTimeoutError(f"Script timed out after {timeout}s") from e
        except OSError as e:
            raise ScriptRuntimeError(f"Could not start script interpreter: {e}") from e

        for line in (proc.stderr or "").splitlines():
            logger.info(f"[{label}] {line}")

        try:
            payload = json.loads(proc.stdout)
        except ValueError as e:
            raise ScriptRuntimeError(
                f"Script exited with code {proc.returncode} without a result"
            ) from e

        if not payload.get("ok"):
            raise ScriptRuntimeError(payload.get("error") or "Script failed")
        return payload.get("result")
