"""
Sandboxed execution of model-written Python snippets against a JSON document.

Every call is isolated in three layers:

1. Static validation with `ast` rejects imports outside an allow-list, access to
   private or dunder names and attributes (also when spelled in string
   literals), and calls to builtins that reach the host (eval, open, getattr, ...).
   Nothing on the allow-list looks attributes up by string name.
2. The snippet runs in a fresh interpreter (`sandbox_runner.py`) started with
   `-I -S`, an empty temporary working directory and a scrubbed environment.
   The child receives its own copy of the document over stdin, so mutations
   never leak back to the caller. Imports hand the snippet a read-only view of
   the module's public names, without the modules it imported itself.
3. The child applies memory and CPU limits where the platform supports them and
   the parent enforces a wall-clock timeout.

This is defence in depth rather than a hard security boundary: CPython cannot
be fully sandboxed in-process, which is why the process boundary and limits are
the layer that bounds the damage.

`SandboxExecutor.execute` never raises; every failure becomes `ExecutionResult.err`.
"""

from __future__ import annotations

import ast
import json
import logging
import math
import os
import re
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

from json_chat.app.config import DOCUMENT_VARIABLE, RESULT_VARIABLE
from json_chat.infrastructure.data_models import ExecutionRequest, ExecutionResult

RUNNER_PATH = Path(__file__).with_name("sandbox_runner.py")

ALLOWED_MODULES = frozenset({
    "collections",
    "datetime",
    "decimal",
    "fractions",
    "functools",
    "itertools",
    "json",
    "math",
    "re",
    "statistics",
})

FORBIDDEN_CALLS = frozenset({
    "breakpoint",
    "compile",
    "delattr",
    "eval",
    "exec",
    "exit",
    "getattr",
    "globals",
    "help",
    "input",
    "locals",
    "open",
    "quit",
    "setattr",
    "vars",
})

# Module attributes that lead back to the host from allowed modules
FORBIDDEN_ATTRIBUTES = frozenset({
    "builtins",
    "codecs",
    "f_back",
    "f_globals",
    "gi_frame",
    "io",
    "modules",
    "os",
    "random",
    "subprocess",
    "sys",
})

_CODE_FENCE = re.compile(r"^\s*```[\w+-]*\s*\n(?P<body>.*?)\n?\s*```\s*$", re.DOTALL)
# Dunder names inside string literals, e.g. "__class__" or "{0.__globals__}"
_DUNDER_IN_STRING = re.compile(r"(?:^|\W)__\w")


class CodeValidator(ast.NodeVisitor):
    """AST validator that collects every policy violation in a snippet."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.name.partition(".")[0] not in ALLOWED_MODULES:
                self.errors.append(f"Import of '{alias.name}' is not allowed")
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        module = node.module or ""
        if node.level or module.partition(".")[0] not in ALLOWED_MODULES:
            self.errors.append(f"Import from '{'.' * node.level}{module}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self.errors.append(f"Access to private attribute '{node.attr}' is not allowed")
        elif node.attr in FORBIDDEN_ATTRIBUTES:
            self.errors.append(f"Access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self.errors.append(f"Use of name '{node.id}' is not allowed")
        elif node.id in FORBIDDEN_CALLS:
            self.errors.append(f"Use of '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str) and _DUNDER_IN_STRING.search(node.value):
            self.errors.append(f"String {node.value[:40]!r} names a private attribute")
        self.generic_visit(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self.errors.append("Class definitions are not supported")
        self.generic_visit(node)

    def validate(self, code: str) -> list[str]:
        self.errors = []
        try:
            tree = ast.parse(code)
        except SyntaxError as e:
            return [f"SyntaxError: {e.msg} (line {e.lineno})"]
        except ValueError as e:  # e.g. null bytes on older interpreters
            return [f"SyntaxError: {e}"]
        self.visit(tree)
        return self.errors


def validate_code(code: str) -> list[str]:
    """Return the list of policy violations in `code`; empty when it may run."""
    return CodeValidator().validate(code)


def strip_code_fences(code: str) -> str:
    """Remove a surrounding markdown code fence that models sometimes add."""
    match = _CODE_FENCE.match(code)
    return match.group("body") if match else code


def _sandbox_env() -> dict[str, str]:
    env = {"PATH": os.defpath}
    # Windows cannot start an interpreter without SYSTEMROOT
    if "SYSTEMROOT" in os.environ:
        env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
    return env


class SandboxExecutor:
    """
    Run snippets against a document in a throwaway interpreter.

    Args:
        timeout_seconds: Wall-clock budget per execution.
        memory_limit_mb: Address-space limit for the child (POSIX only).
        python_executable: Interpreter used for the child; defaults to the current one.
        logger: Optional logger for execution summaries.
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        memory_limit_mb: int = 512,
        python_executable: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.memory_limit_mb = memory_limit_mb
        self.python_executable = python_executable or sys.executable
        self.logger = logger or logging.getLogger("json-chat")

    def execute(self, code: str, document: Any) -> ExecutionResult:
        """
        Execute `code` with `json_data` bound to a private copy of `document`.

        Returns:
            ExecutionResult: `ok(value)` when the snippet assigned `result`,
                `undefined()` when it never did, `err(message)` on any failure.
        """
        try:
            result = self._execute(ExecutionRequest(code=code, document=document))
        except Exception as e:
            result = ExecutionResult.err(f"Sandbox failure: {e}")

        if result.is_ok:
            self.logger.info(f"Sandbox execution succeeded (assigned={result.assigned})")
        else:
            self.logger.info(f"Sandbox execution failed: {result.error}")
        return result

    def _execute(self, request: ExecutionRequest) -> ExecutionResult:
        if not isinstance(request.code, str) or not request.code.strip():
            return ExecutionResult.err("No code was provided")

        code = strip_code_fences(request.code)
        self.logger.debug(f"Sandbox code:\n{code}")

        violations = validate_code(code)
        if violations:
            return ExecutionResult.err("Code rejected: " + "; ".join(violations))

        try:
            payload = json.dumps({
                "code": code,
                "document": request.document,
                "document_variable": DOCUMENT_VARIABLE,
                "result_variable": RESULT_VARIABLE,
                "memory_limit_mb": self.memory_limit_mb,
                "cpu_seconds": math.ceil(self.timeout_seconds) + 1,
                "allowed_modules": sorted(ALLOWED_MODULES),
            })
        except (TypeError, ValueError) as e:
            return ExecutionResult.err(f"Document is not JSON serializable: {e}")

        with tempfile.TemporaryDirectory(prefix="json-chat-sandbox-") as workdir:
            try:
                proc = subprocess.run(
                    [self.python_executable, "-I", "-S", "-X", "utf8", str(RUNNER_PATH)],
                    input=payload,
                    capture_output=True,
                    encoding="utf-8",
                    timeout=self.timeout_seconds,
                    cwd=workdir,
                    env=_sandbox_env(),
                )
            except subprocess.TimeoutExpired:
                return ExecutionResult.err(
                    f"Execution timed out after {self.timeout_seconds:g} seconds"
                )

        return self._parse_response(proc)

    @staticmethod
    def _parse_response(proc: subprocess.CompletedProcess[str]) -> ExecutionResult:
        lines = (proc.stdout or "").strip().splitlines()
        if not lines:
            detail = (proc.stderr or "").strip().splitlines()
            message = f"Sandbox process exited with code {proc.returncode}"
            if proc.returncode < 0:
                message = f"Sandbox process was killed by signal {-proc.returncode}"
            if detail:
                message += f": {detail[-1]}"
            return ExecutionResult.err(message)

        try:
            response = json.loads(lines[-1])
        except json.JSONDecodeError:
            return ExecutionResult.err("Sandbox returned an unreadable response")
        if not isinstance(response, dict):
            return ExecutionResult.err("Sandbox returned an unreadable response")

        stdout = response.get("stdout") or ""
        if response.get("status") == "ok":
            if response.get("assigned"):
                return ExecutionResult.ok(response.get("value"), stdout=stdout)
            return ExecutionResult.undefined(stdout=stdout)
        return ExecutionResult.err(str(response.get("error") or "Unknown error"))
