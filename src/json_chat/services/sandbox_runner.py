"""
Child-process entry point for the script sandbox.

The parent starts this file with a fresh, isolated interpreter
(`python -I -S -X utf8 sandbox_runner.py`), writes one JSON request to stdin and
reads one JSON line back from stdout:

    request:  {"code": str, "document": <json>, "document_variable": str,
               "result_variable": str, "memory_limit_mb": int, "cpu_seconds": int,
               "allowed_modules": [str, ...]}
    response: {"status": "ok", "assigned": bool, "value": <json>, "stdout": str}
              {"status": "err", "error": str}

Only the standard library may be used here; site-packages are not on the path.
"""

import builtins
import contextlib
import io
import json
import math
import sys
import types

MAX_STDOUT_CHARS = 10000

SAFE_BUILTINS = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr", "complex",
    "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset", "hash", "hex",
    "int", "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min", "next",
    "oct", "ord", "pow", "print", "range", "repr", "reversed", "round", "set", "slice",
    "sorted", "str", "sum", "tuple", "type", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "NameError", "NotImplementedError", "OverflowError",
    "RuntimeError", "StopIteration", "SystemExit", "TypeError", "ValueError",
    "ZeroDivisionError",
)


def _limit_resources(memory_limit_mb: int, cpu_seconds: int) -> None:
    if sys.platform == "win32":
        return
    import resource

    limits = [
        (resource.RLIMIT_AS, memory_limit_mb * 1024 * 1024),
        (resource.RLIMIT_CPU, cpu_seconds),
    ]
    for limit, value in limits:
        try:
            resource.setrlimit(limit, (value, value))
        except (ValueError, OSError):
            # Some platforms refuse lowering particular limits; the wall-clock
            # timeout in the parent still applies
            pass


def _public_view(module, allowed_modules: frozenset[str], views: dict):
    """Copy a module's public names, keeping only submodules of allowed packages."""
    if module.__name__ in views:
        return views[module.__name__]
    view = types.SimpleNamespace()
    views[module.__name__] = view
    for attr, value in vars(module).items():
        if attr.startswith("_"):
            continue
        if isinstance(value, types.ModuleType):
            if value.__name__.partition(".")[0] not in allowed_modules:
                continue
            value = _public_view(value, allowed_modules, views)
        setattr(view, attr, value)
    return view


def _build_builtins(allowed_modules: frozenset[str]) -> dict:
    def restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
        root = name.partition(".")[0]
        if level != 0 or root not in allowed_modules:
            raise ImportError(f"Import of '{name}' is not allowed")
        module = __import__(name, globals, locals, fromlist, level)
        return _public_view(module, allowed_modules, {})

    safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    safe["__import__"] = restricted_import
    return safe


def _jsonable(value):
    if isinstance(value, float) and not math.isfinite(value):
        # Strict JSON has no NaN or Infinity
        return repr(value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {k if isinstance(k, str) else str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return repr(value)


def _describe(error: BaseException) -> str:
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name


def run_snippet(request: dict) -> dict:
    document_variable = request["document_variable"]
    result_variable = request["result_variable"]
    scope = {
        "__builtins__": _build_builtins(frozenset(request["allowed_modules"])),
        document_variable: request["document"],
    }

    captured = io.StringIO()
    try:
        compiled = compile(request["code"], "<snippet>", "exec")
        with contextlib.redirect_stdout(captured):
            exec(compiled, scope)
    except BaseException as e:  # the snippet may raise anything, SystemExit included
        return {"status": "err", "error": _describe(e)}

    stdout = captured.getvalue()[:MAX_STDOUT_CHARS]
    if result_variable not in scope:
        return {"status": "ok", "assigned": False, "stdout": stdout}
    try:
        value = _jsonable(scope[result_variable])
    except Exception as e:
        return {"status": "err", "error": f"Result could not be serialized: {_describe(e)}"}
    return {"status": "ok", "assigned": True, "value": value, "stdout": stdout}


def main() -> int:
    request = json.loads(sys.stdin.read())
    _limit_resources(request["memory_limit_mb"], request["cpu_seconds"])

    response = run_snippet(request)
    try:
        line = json.dumps(response, allow_nan=False)
    except (TypeError, ValueError, RecursionError) as e:
        line = json.dumps({"status": "err", "error": f"Result could not be serialized: {e}"})

    sys.stdout.write(line + "\n")
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
