"""Condense a failed run's build log into an :class:`ErrorSummary`."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from branchrunner.schemas import ErrorCategory, ErrorSummary

logger = logging.getLogger(__name__)

MAX_COLLECTED_ERRORS = 10
TOP_ERRORS = 5
MAX_STACK_LINES = 3

_ERROR_PATTERNS = [
    re.compile(pattern, flags)
    for pattern, flags in (
        # npm / node
        (r"npm ERR!", re.IGNORECASE),
        (r"error:", re.IGNORECASE),
        (r"(ENOENT|EACCES|EPERM):", re.IGNORECASE),
        (r"MODULE_NOT_FOUND|Cannot find module", re.IGNORECASE),
        (r"(SyntaxError|TypeError|ReferenceError):", re.IGNORECASE),
        # TypeScript / ESLint
        (r"TS\d+:", 0),
        (r"\d+:\d+\s+error\s+", 0),
        # build tools
        (r"Build failed|Compilation failed|Failed to compile", re.IGNORECASE),
        (r"xcodebuild:|clang:|ld:", re.IGNORECASE),
        (r"FAILURE:", 0),
        (r"BUILD FAILED|Execution failed", re.IGNORECASE),
        # git
        (r"fatal:", re.IGNORECASE),
        # network
        (r"ETIMEDOUT|ECONNREFUSED|ENOTFOUND", re.IGNORECASE),
    )
]
_WARNING_PATTERNS = [
    re.compile(r"warn(ing)?:", re.IGNORECASE),
    re.compile(r"deprecated", re.IGNORECASE),
    re.compile(r"\d+:\d+\s+warning\s+"),
]
_STACK_PATTERNS = [re.compile(r"^at\s+"), re.compile(r"^\^+$")]
_QUOTED = re.compile(r"['\"]([^'\"]+)['\"]")
_TS_CODE = re.compile(r"ts\d+", re.IGNORECASE)


def _summarize(errors: list[str], warning_count: int) -> str:
    if not errors:
        if warning_count:
            plural = "s" if warning_count > 1 else ""
            return f"Build completed with {warning_count} warning{plural}"
        return "Build completed successfully"

    first = errors[0].lower()
    if "module_not_found" in first or "cannot find module" in first:
        match = _QUOTED.search(first)
        return f"Missing module: {match.group(1)}" if match else "Missing dependency"
    if _TS_CODE.search(first):
        plural = "s" if len(errors) > 1 else ""
        return f"TypeScript error{plural} ({len(errors)} found)"
    if "syntaxerror" in first:
        return "Syntax error in code"
    if "enoent" in first:
        return "File or directory not found"
    if "eacces" in first or "eperm" in first:
        return "Permission denied"
    if "npm err" in first:
        return "npm installation failed"
    if "xcodebuild" in first:
        return "iOS build failed"
    if "gradle" in first or "android" in first:
        return "Android build failed"
    if "fatal" in first:
        return "Git operation failed"
    if len(errors) == 1:
        only = errors[0].splitlines()[0]
        return only if len(only) <= 80 else only[:77] + "..."
    return f"{len(errors)} errors found"


def _categorize(errors: list[str]) -> ErrorCategory:
    if not errors:
        return "unknown"
    text = "\n".join(errors).lower()
    if any(word in text for word in ("npm", "build", "compile", "typescript", "xcodebuild", "gradle")):
        return "build"
    if _TS_CODE.search(text):
        return "build"
    if any(word in text for word in ("runtime", "typeerror", "referenceerror", "uncaught")):
        return "runtime"
    if any(word in text for word in ("etimedout", "econnrefused", "enotfound", "network")):
        return "network"
    # A matched error that fits no bucket is most likely a build failure.
    return "build"


def analyze_log_content(content: str) -> ErrorSummary:
    """Extract the top error lines, count warnings, and classify the failure.

    Up to three stack-trace lines following an error are folded into it.
    """
    errors: list[str] = []
    warnings: set[str] = set()
    in_stack = False
    stack_lines = 0

    for raw in (content or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        if any(p.search(line) for p in _STACK_PATTERNS):
            if in_stack and stack_lines < MAX_STACK_LINES:
                errors[-1] += f"\n  {line}"
                stack_lines += 1
            continue
        in_stack = False
        stack_lines = 0

        if any(p.search(line) for p in _ERROR_PATTERNS):
            if line not in errors and len(errors) < MAX_COLLECTED_ERRORS:
                errors.append(line)
                in_stack = True
            continue
        if any(p.search(line) for p in _WARNING_PATTERNS):
            warnings.add(line)

    return ErrorSummary(
        error_lines=errors[:TOP_ERRORS],
        warning_count=len(warnings),
        summary=_summarize(errors, len(warnings)),
        category=_categorize(errors),
    )


def analyze_log_file(path: str | Path) -> ErrorSummary | None:
    """``analyze_log_content`` over a file; ``None`` when it cannot be read."""
    try:
        content = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("Cannot analyze %s: %s", path, exc)
        return None
    return analyze_log_content(content)
