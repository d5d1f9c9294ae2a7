"""Security validation for the execute_code sandbox.

Two checks run before anything touches the filesystem or the interpreter:
- ``validate_path`` keeps every path argument inside the declared roots.
- ``validate_script`` rejects snippets that reach outside the exposed
  capabilities (imports, dunder/private access, bare ``except:``).
"""

import ast
from collections.abc import Sequence
from pathlib import Path

# Names that are never resolvable inside a snippet, even if a capability
# object happened to expose them.
BLOCKED_NAMES: frozenset[str] = frozenset({
    "eval",
    "exec",
    "compile",
    "open",
    "input",
    "globals",
    "locals",
    "vars",
    "getattr",
    "setattr",
    "delattr",
    "breakpoint",
    "memoryview",
    "type",
    "object",
})

# Attribute prefixes that lead from ordinary objects to frames, code objects
# and interpreter internals.
BLOCKED_ATTRIBUTE_PREFIXES: tuple[str, ...] = ("_", "gi_", "cr_", "ag_", "f_", "co_", "tb_")

# str.format can walk attributes from inside a format string.
BLOCKED_ATTRIBUTES: frozenset[str] = frozenset({"format", "format_map", "mro"})

MAX_SCRIPT_CHARS = 20_000


def validate_path(roots: Sequence[str], path: str) -> tuple[bool, str, str]:
    """Canonicalise ``path`` and check it lies inside one of ``roots``.

    Relative paths are resolved against the first root. Symlinks are
    followed before the containment check.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).

    Examples:
        >>> validate_path(["/workspace"], "src/app.py")
        (True, "", "/workspace/src/app.py")
        >>> validate_path(["/workspace"], "/etc/passwd")
        (False, "Access denied: /etc/passwd is outside the allowed roots", "")
    """
    if not isinstance(path, str) or not path:
        return False, "Path cannot be empty", ""
    if "\x00" in path:
        return False, "Path contains null byte", ""
    if not roots:
        return False, f"Access denied: {path} is outside the allowed roots", ""

    try:
        resolved_roots = [Path(root).resolve() for root in roots]
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = resolved_roots[0] / candidate
        resolved = candidate.resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    for root in resolved_roots:
        if resolved == root or resolved.is_relative_to(root):
            return True, "", str(resolved)

    return False, f"Access denied: {path} is outside the allowed roots", ""


def validate_script(code: str) -> tuple[bool, str, ast.Module | None]:
    """Parse a snippet and reject constructs outside the capability set.

    Returns:
        A tuple of (is_valid, error_message, parsed_module).

    Examples:
        >>> validate_script("import os")[:2]
        (False, "Imports are not allowed")
        >>> validate_script("x.__class__")[:2]
        (False, "Access to private attribute '__class__' is not allowed")
    """
    if not isinstance(code, str) or not code.strip():
        return False, "Code cannot be empty", None
    if len(code) > MAX_SCRIPT_CHARS:
        return False, f"Code exceeds {MAX_SCRIPT_CHARS} characters", None

    try:
        tree = ast.parse(code, mode="exec")
    except SyntaxError as e:
        return False, f"SyntaxError: {e.msg} (line {e.lineno})", None

    for node in ast.walk(tree):
        if isinstance(node, ast.Import | ast.ImportFrom):
            return False, "Imports are not allowed", None
        if isinstance(node, ast.Global | ast.Nonlocal):
            return False, "global/nonlocal statements are not allowed", None
        if isinstance(node, ast.Attribute):
            if node.attr.startswith(BLOCKED_ATTRIBUTE_PREFIXES):
                return False, f"Access to private attribute '{node.attr}' is not allowed", None
            if node.attr in BLOCKED_ATTRIBUTES:
                return False, f"Use of '.{node.attr}' is not allowed", None
        if isinstance(node, ast.Name):
            if node.id.startswith("_"):
                return False, f"Access to private name '{node.id}' is not allowed", None
            if node.id in BLOCKED_NAMES:
                return False, f"Use of '{node.id}' is not allowed", None
        if isinstance(node, ast.ExceptHandler) and node.type is None:
            return False, "Bare 'except:' is not allowed", None
        if isinstance(node, ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef | ast.Lambda):
            if isinstance(node, ast.AsyncFunctionDef | ast.ClassDef):
                return False, f"{type(node).__name__} is not allowed", None
            args = node.args
            for arg in (*args.posonlyargs, *args.args, *args.kwonlyargs):
                if arg.arg.startswith("_"):
                    return False, f"Access to private name '{arg.arg}' is not allowed", None
        if isinstance(node, ast.Await | ast.AsyncFor | ast.AsyncWith | ast.Yield | ast.YieldFrom):
            return False, f"{type(node).__name__} is not allowed", None

    return True, "", tree
