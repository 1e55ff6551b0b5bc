"""Static checks for generated code and parsing of compiler/runtime output."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from .dependency_graph import scan_tokens
from .models import ErrorType, ParsedError, ValidationResult

logger = logging.getLogger(__name__)

TS_SUGGESTIONS = {
    "2304": "Check if the name is imported or defined",
    "2339": "The property might not exist on this type",
    "2345": "Argument type mismatch - check the function signature",
    "2322": "Type mismatch - ensure the assigned value matches the expected type",
    "2307": "Module not found - check the import path or install the package",
    "7006": "Add type annotation to the parameter",
    "2532": "Object might be undefined - add null check",
    "2531": "Object might be null - add null check",
}

_TS_FULL_RE = re.compile(r"^(.+?)\((\d+),(\d+)\):\s*(?:error|warning)\s+TS(\d+):\s*(.+)$")
_TS_DASH_RE = re.compile(r"^(.+?):(\d+):(\d+)\s+-\s+(?:error|warning)\s+TS(\d+):\s*(.+)$")
_TS_SIMPLE_RE = re.compile(r"error TS(\d+):\s*(.+)$")
_STACK_RE = re.compile(r"Error: (.+?)(?:\n\s+at .+)+")
_STACK_FRAME_RE = re.compile(r"at .+?\((.+?):(\d+):(\d+)\)")


def classify_error_message(message: str) -> ErrorType:
    """Best-effort error category from a free-form message."""
    if re.search(r"SyntaxError|Unexpected token|Unterminated|Mismatched|truncated|expected", message, re.I):
        return ErrorType.SYNTAX
    if re.search(r"Cannot find module|Module not found|Failed to resolve import", message, re.I):
        return ErrorType.IMPORT
    if re.search(r"ReferenceError|is not defined|Cannot find name", message, re.I):
        return ErrorType.REFERENCE
    if re.search(r"TypeError|not assignable|Argument of type|does not exist on type|possibly '(null|undefined)'",
                 message, re.I):
        return ErrorType.TYPE
    if re.search(r"Error:", message):
        return ErrorType.RUNTIME
    return ErrorType.UNKNOWN


def _classify_ts_code(code: str, message: str) -> ErrorType:
    if code.startswith("1"):
        return ErrorType.SYNTAX
    if code in ("2307", "2792"):
        return ErrorType.IMPORT
    if code in ("2304", "2552"):
        return ErrorType.REFERENCE
    return ErrorType.TYPE


def _ts_error(file: Optional[str], line: Optional[str], column: Optional[str], code: str, message: str) -> ParsedError:
    return ParsedError(
        type=_classify_ts_code(code, message),
        message=message.strip(),
        file=file.strip() if file else None,
        line=int(line) if line else None,
        column=int(column) if column else None,
        suggestion=TS_SUGGESTIONS.get(code, "Review the TypeScript error and fix accordingly"),
    )


def _parse_line(line: str) -> Optional[ParsedError]:
    match = _TS_FULL_RE.match(line)
    if match:
        return _ts_error(match.group(1), match.group(2), match.group(3), match.group(4), match.group(5))

    match = _TS_DASH_RE.match(line)
    if match:
        return _ts_error(match.group(1), match.group(2), match.group(3), match.group(4), match.group(5))

    match = _TS_SIMPLE_RE.search(line)
    if match:
        return _ts_error(None, None, None, match.group(1), match.group(2))

    if "ReferenceError:" in line:
        return ParsedError(
            type=ErrorType.REFERENCE,
            message=line.split("ReferenceError:", 1)[1].strip() or line,
            suggestion="Check if the variable is defined and in scope",
        )
    if "TypeError:" in line:
        return ParsedError(
            type=ErrorType.TYPE,
            message=line.split("TypeError:", 1)[1].strip() or line,
            suggestion="Check the types of values being used",
        )
    if "Cannot find module" in line:
        match = re.search(r"Cannot find module '([^']+)'", line)
        module = match.group(1) if match else "unknown"
        return ParsedError(
            type=ErrorType.IMPORT,
            message=f"Cannot find module: {module}",
            suggestion=f"Run 'npm install {module.split('/')[0]}' to install the missing module",
        )
    if "SyntaxError:" in line:
        return ParsedError(
            type=ErrorType.SYNTAX,
            message=line.split("SyntaxError:", 1)[1].strip() or line,
            suggestion="Check for missing brackets, quotes, or semicolons",
        )
    if "Unexpected token" in line:
        return ParsedError(
            type=ErrorType.SYNTAX,
            message=line.strip(),
            suggestion="Check for syntax errors near the unexpected token",
        )
    return None


def parse_compiler_output(output: str) -> list[ParsedError]:
    """Parse tsc, node and bundler output into ParsedErrors.

    Recognizes `file(line,col): error TSxxxx: msg`, `file:line:col - error
    TSxxxx: msg`, node error lines, and one trailing stack trace.
    """
    errors: list[ParsedError] = []
    seen: set[tuple] = set()
    for line in output.splitlines():
        parsed = _parse_line(line)
        if parsed is not None and (parsed.key, parsed.line) not in seen:
            seen.add((parsed.key, parsed.line))
            errors.append(parsed)

    stack = _STACK_RE.search(output)
    if stack and not any(e.type == ErrorType.RUNTIME for e in errors):
        frame = _STACK_FRAME_RE.search(output)
        errors.append(
            ParsedError(
                type=ErrorType.RUNTIME,
                message=stack.group(1),
                file=frame.group(1) if frame else None,
                line=int(frame.group(2)) if frame else None,
                column=int(frame.group(3)) if frame else None,
                stack=stack.group(0),
            )
        )
    return errors


def _bracket_errors(code: str, file: Optional[str]) -> list[ParsedError]:
    counts = {"{": 0, "}": 0, "(": 0, ")": 0}
    for token in scan_tokens(code):
        if token.kind == "punct" and token.value in counts:
            counts[token.value] += 1

    errors = []
    if counts["{"] != counts["}"]:
        errors.append(
            ParsedError(
                type=ErrorType.SYNTAX,
                message=f"Mismatched braces: {counts['{']} open, {counts['}']} close",
                file=file,
            )
        )
    if counts["("] != counts[")"]:
        errors.append(
            ParsedError(
                type=ErrorType.SYNTAX,
                message=f"Mismatched parentheses: {counts['(']} open, {counts[')']} close",
                file=file,
            )
        )
    return errors


def validate_code(code: str, file: Optional[str] = None) -> ValidationResult:
    """Cheap structural checks on a single blob of generated code."""
    errors = _bracket_errors(code, file)

    stripped = code.strip()
    if stripped.endswith((",", "(", "{")):
        errors.append(ParsedError(type=ErrorType.SYNTAX, message="Code appears truncated", file=file))

    if "export default" not in code and "ReactDOM" not in code and "createRoot" not in code:
        errors.append(
            ParsedError(
                type=ErrorType.REFERENCE,
                message="Missing export or render call",
                file=file,
                suggestion="Add `export default` for the root component",
            )
        )

    return ValidationResult.from_errors(errors)


def validate_files(files: Iterable) -> ValidationResult:
    """Run the structural checks per file; the export check applies to the set."""
    errors: list[ParsedError] = []
    has_entry = False
    for f in files:
        path, content = (f.path, f.content) if hasattr(f, "path") else (f["path"], f["content"])
        if not path.endswith((".ts", ".tsx", ".js", ".jsx")):
            continue
        errors.extend(_bracket_errors(content, path))
        if content.strip().endswith((",", "(", "{")):
            errors.append(ParsedError(type=ErrorType.SYNTAX, message="Code appears truncated", file=path))
        if "export default" in content or "ReactDOM" in content or "createRoot" in content:
            has_entry = True

    if not has_entry:
        errors.append(ParsedError(type=ErrorType.REFERENCE, message="Missing export or render call"))

    logger.debug(f"Validated files: {len(errors)} errors")
    return ValidationResult.from_errors(errors)
