"""
Static Code Validator

Cheap pre-flight checks run on generated code before it reaches the
sandbox.  The sandbox is the real isolation boundary; this pass only
rejects code that is obviously broken or obviously trying to escape,
so a bad step fails fast without paying for a container start.

* Python - must parse; no process / network / interpreter-escape
  modules, no ``eval``-family calls, no dunder attribute access.
* R      - forbidden-pattern scan (shell, downloads, sockets, deletes).
* SQL    - exactly one read-only ``SELECT`` / ``WITH`` statement.
"""

from __future__ import annotations

import ast
import logging
import re

from pydantic import BaseModel, Field

from backend.app.schema.analysis_schema import CodeLanguage

logger = logging.getLogger(__name__)


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.errors)


FORBIDDEN_PY_MODULES = frozenset({
    "os", "subprocess", "socket", "shutil", "sys", "requests", "urllib",
    "urllib3", "http", "httpx", "ctypes", "multiprocessing", "importlib",
    "pty", "signal", "ftplib", "smtplib", "telnetlib", "paramiko",
})
FORBIDDEN_PY_CALLS = frozenset({
    "eval", "exec", "compile", "__import__", "globals", "locals", "vars",
    "getattr", "setattr", "delattr", "input", "breakpoint",
})
# Dunders that plotting / dataframe code legitimately touches.
_ALLOWED_DUNDERS = frozenset({"__name__", "__init__", "__len__", "__main__"})

FORBIDDEN_R_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bsystem2?\s*\("), "shell execution"),
    (re.compile(r"\bshell(\.exec)?\s*\("), "shell execution"),
    (re.compile(r"\bdownload\.file\s*\("), "network download"),
    (re.compile(r"\burl\s*\("), "network connection"),
    (re.compile(r"\bsocketConnection\s*\("), "network socket"),
    (re.compile(r"\bSys\.setenv\s*\("), "environment mutation"),
    (re.compile(r"\bunlink\s*\("), "file deletion"),
    (re.compile(r"\bfile\.remove\s*\("), "file deletion"),
    (re.compile(r"\beval\s*\(\s*parse\s*\("), "dynamic evaluation"),
)

_SQL_START_RE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)
_SQL_FORBIDDEN_RE = re.compile(
    r"\b(insert|update|delete|drop|alter|create|replace|truncate|attach|detach|"
    r"pragma|grant|revoke|vacuum|copy)\b",
    re.IGNORECASE,
)
_SQL_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_SQL_STRING_RE = re.compile(r"'(?:[^']|'')*'")


def validate_code(language: CodeLanguage | str, code: str) -> ValidationResult:
    """Run the static checks for *language* over *code*."""
    if not code or not code.strip():
        return ValidationResult(valid=False, errors=["Generated code is empty."])

    try:
        lang = CodeLanguage(str(getattr(language, "value", language)).lower())
    except ValueError:
        return ValidationResult(valid=False, errors=[f"Unsupported language '{language}'."])

    if lang == CodeLanguage.PYTHON:
        errors = _validate_python(code)
    elif lang == CodeLanguage.R:
        errors = _validate_r(code)
    else:
        errors = _validate_sql(code)

    if errors:
        logger.info("Static validation rejected %s code: %s", lang.value, "; ".join(errors))
    return ValidationResult(valid=not errors, errors=errors)


def _validate_python(code: str) -> list[str]:
    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        return [f"Syntax error at line {exc.lineno}: {exc.msg}"]

    errors: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                root = alias.name.split(".")[0]
                if root in FORBIDDEN_PY_MODULES:
                    errors.append(f"Forbidden import '{alias.name}'.")
        elif isinstance(node, ast.ImportFrom):
            root = (node.module or "").split(".")[0]
            if root in FORBIDDEN_PY_MODULES:
                errors.append(f"Forbidden import '{node.module}'.")
        elif isinstance(node, ast.Call):
            if isinstance(node.func, ast.Name) and node.func.id in FORBIDDEN_PY_CALLS:
                errors.append(f"Forbidden call '{node.func.id}()'.")
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("__") and node.attr not in _ALLOWED_DUNDERS:
                errors.append(f"Forbidden dunder attribute '{node.attr}'.")
        elif isinstance(node, ast.Name):
            if node.id.startswith("__") and node.id not in _ALLOWED_DUNDERS:
                errors.append(f"Forbidden dunder name '{node.id}'.")
    # Deduplicate, keep first-seen order
    return list(dict.fromkeys(errors))


def _validate_r(code: str) -> list[str]:
    errors = []
    for pattern, label in FORBIDDEN_R_PATTERNS:
        match = pattern.search(code)
        if match:
            errors.append(f"Forbidden R call '{match.group(0).strip()}' ({label}).")
    return errors


def _validate_sql(code: str) -> list[str]:
    stripped = _SQL_COMMENT_RE.sub(" ", code)
    bare = _SQL_STRING_RE.sub("''", stripped).strip().rstrip(";").strip()
    if ";" in bare:
        return ["Only a single SQL statement is allowed."]
    if not _SQL_START_RE.match(bare):
        return ["SQL must be a SELECT or WITH query."]
    match = _SQL_FORBIDDEN_RE.search(bare)
    if match:
        return [f"Forbidden SQL keyword '{match.group(0).upper()}'."]
    return []
