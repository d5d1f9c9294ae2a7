"""Scoped script execution for the execute_code tool."""

from intentgraph.sandbox.executor import SandboxedExecutor
from intentgraph.sandbox.security import validate_path, validate_script

__all__ = ["SandboxedExecutor", "validate_path", "validate_script"]
