"""Patch application and rule-based fallback patches.

The rules are line-targeted, best-effort text edits. They can produce code
that still does not compile; the fix loop re-validates after every patch.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import Callable, Optional

from .models import CodePatch, GenforgeError, ParsedError
from .workspace import FileStore, WorkspaceError

logger = logging.getLogger(__name__)

# (error, file_content, context) -> CodePatch | None
PatchFunction = Callable[[ParsedError, str, str], Optional[CodePatch]]

COMMON_IMPORTS = {
    "useState": "react",
    "useEffect": "react",
    "useCallback": "react",
    "useMemo": "react",
    "useRef": "react",
    "useContext": "react",
    "useReducer": "react",
}

_MISSING_NAME_RES = (
    re.compile(r"Cannot find name '([\w$]+)'"),
    re.compile(r"'([\w$]+)' is not defined"),
    re.compile(r"\b([\w$]+) is not defined"),
)
_SUGGESTED_MODULE_RE = re.compile(r"from ['\"]([^'\"]+)['\"]")
_NULLISH_RE = re.compile(
    r"possibly '(?:null|undefined)'|Cannot read propert(?:y|ies) of (?:null|undefined)", re.I
)
_NULLISH_NAME_RE = re.compile(r"'([\w$.]+)' is possibly '(?:null|undefined)'")
_UNMATCHED_RE = re.compile(r"Unmatched closing (parenthesis|bracket|brace)", re.I)
_MISMATCHED_RE = re.compile(r"Mismatched (braces|parentheses): (\d+) open, (\d+) close")
_ASSIGNMENT_RE = re.compile(r"(?<![=!<>])=(?![=>])")


class PatchError(GenforgeError):
    """Raised when a patch does not match the file it targets."""


def apply_patch(content: str, patch: CodePatch) -> str:
    """Return content with the patch applied.

    Line ranges are 1-based and inclusive; an empty new_content deletes the
    range. Verbatim replacements change the first occurrence only.
    """
    if patch.mode == "lines":
        lines = content.split("\n")
        start = patch.line_start
        end = patch.line_end if patch.line_end is not None else start
        if start < 1 or end < start or end > len(lines):
            raise PatchError(f"Line range {start}-{end} outside {patch.file} ({len(lines)} lines)")
        replacement = patch.new_content.split("\n") if patch.new_content else []
        lines[start - 1:end] = replacement
        return "\n".join(lines)

    if patch.mode == "replace":
        if patch.old_content not in content:
            raise PatchError(f"Text to replace not found in {patch.file}")
        return content.replace(patch.old_content, patch.new_content, 1)

    return patch.new_content


def _line_patch(file: str, line_no: int, new_line: str, description: str) -> CodePatch:
    return CodePatch(file=file, new_content=new_line, line_start=line_no, line_end=line_no, description=description)


def _target_line(error: ParsedError, lines: list[str]) -> Optional[int]:
    if error.line is None or not 1 <= error.line <= len(lines):
        return None
    return error.line


def module_specifier(from_file: str, target_file: str) -> str:
    """Relative import specifier from one project file to another."""
    target = re.sub(r"\.(tsx?|jsx?)$", "", target_file)
    if target.endswith("/index"):
        target = target[: -len("/index")]
    rel = posixpath.relpath(target, posixpath.dirname(from_file) or ".")
    return rel if rel.startswith(".") else f"./{rel}"


def missing_import_patch(
    error: ParsedError, content: str, file: str, export_index: Optional[dict[str, str]] = None
) -> Optional[CodePatch]:
    """Insert an import for an undefined name before the first import."""
    name = None
    for pattern in _MISSING_NAME_RES:
        match = pattern.search(error.message)
        if match:
            name = match.group(1)
            break
    if name is None:
        return None

    module = COMMON_IMPORTS.get(name)
    if module is None and error.suggestion:
        suggested = _SUGGESTED_MODULE_RE.search(error.suggestion)
        if suggested:
            module = suggested.group(1)
    if module is None and export_index and name in export_index and export_index[name] != file:
        module = module_specifier(file, export_index[name])
    if module is None:
        return None

    import_line = f'import {{ {name} }} from "{module}";'
    if import_line in content:
        return None

    lines = content.split("\n")
    index = next((i for i, line in enumerate(lines) if line.lstrip().startswith("import ")), 0)
    return _line_patch(
        file, index + 1, f"{import_line}\n{lines[index]}", f"Add missing import for {name}"
    )


def null_check_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    """Turn `a.b` into `a?.b` on the offending line."""
    if not _NULLISH_RE.search(error.message):
        return None
    lines = content.split("\n")
    line_no = _target_line(error, lines)
    if line_no is None:
        return None

    line = lines[line_no - 1]
    named = _NULLISH_NAME_RE.search(error.message)
    if named:
        target = re.escape(named.group(1))
        new_line = re.sub(rf"(?<![\w$?]){target}\.(?=[A-Za-z_$])", f"{named.group(1)}?.", line)
    else:
        new_line = re.sub(r"(?<![?\w$.])([A-Za-z_$][\w$]*|\)|\])\.(?=[A-Za-z_$])", r"\1?.", line)
    if new_line == line:
        return None
    return _line_patch(file, line_no, new_line, "Add optional chaining")


def unmatched_closing_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    """Drop the last surplus closing character at or above the error line."""
    closing = None
    match = _UNMATCHED_RE.search(error.message)
    if match:
        closing = {"parenthesis": ")", "bracket": "]", "brace": "}"}[match.group(1).lower()]
    else:
        mismatched = _MISMATCHED_RE.search(error.message)
        if mismatched and int(mismatched.group(3)) > int(mismatched.group(2)):
            closing = "}" if mismatched.group(1) == "braces" else ")"
    if closing is None:
        return None

    opener = {")": "(", "]": "[", "}": "{"}[closing]
    lines = content.split("\n")
    start = _target_line(error, lines) or len(lines)
    for i in range(start - 1, -1, -1):
        line = lines[i]
        if line.count(closing) > line.count(opener):
            cut = line.rfind(closing)
            return _line_patch(
                file, i + 1, line[:cut] + line[cut + 1:], f"Remove unmatched '{closing}'"
            )
    return None


def unterminated_string_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    if "Unterminated string" not in error.message:
        return None
    quote = re.search(r"started with (['\"`])", error.message)
    lines = content.split("\n")
    line_no = _target_line(error, lines)
    if quote is None or line_no is None:
        return None
    return _line_patch(file, line_no, lines[line_no - 1] + quote.group(1), "Close string literal")


def equality_operator_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    lines = content.split("\n")
    line_no = _target_line(error, lines)
    if line_no is None or "====" not in lines[line_no - 1]:
        return None
    return _line_patch(file, line_no, lines[line_no - 1].replace("====", "==="), "Fix equality operator")


def semicolon_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    if not re.search(r"Missing semicolon|';' expected", error.message, re.I):
        return None
    lines = content.split("\n")
    line_no = _target_line(error, lines)
    if line_no is None:
        return None
    trimmed = lines[line_no - 1].rstrip()
    if not trimmed or trimmed.endswith((";", "{", "}", ",")):
        return None
    return _line_patch(file, line_no, trimmed + ";", "Add missing semicolon")


def as_any_patch(error: ParsedError, content: str, file: str) -> Optional[CodePatch]:
    """Last resort for assignment type errors: cast the right-hand side."""
    if "not assignable" not in error.message:
        return None
    lines = content.split("\n")
    line_no = _target_line(error, lines)
    if line_no is None:
        return None

    line = lines[line_no - 1]
    if "as any" in line or not _ASSIGNMENT_RE.search(line):
        return None
    stripped = line.rstrip()
    if stripped.endswith(";"):
        new_line = stripped[:-1] + " as any;"
    else:
        new_line = stripped + " as any"
    return _line_patch(file, line_no, new_line, "Cast assignment to any")


def rule_based_patch(
    error: ParsedError, content: str, file: str, export_index: Optional[dict[str, str]] = None
) -> Optional[CodePatch]:
    """First applicable fallback rule, or None."""
    patch = missing_import_patch(error, content, file, export_index)
    if patch is not None:
        return patch
    for rule in (
        null_check_patch,
        unmatched_closing_patch,
        unterminated_string_patch,
        equality_operator_patch,
        semicolon_patch,
        as_any_patch,
    ):
        patch = rule(error, content, file)
        if patch is not None:
            return patch
    return None


class PatchApplier:
    """Callable that applies a generated fix to the file an error points at.

    Asks the structured patch function first and falls back to the rules
    when it is missing, fails, or returns nothing. Returns the patch that
    was written, or None when the file was left alone.
    """

    def __init__(
        self,
        store: FileStore,
        patch_function: Optional[PatchFunction] = None,
        export_index: Optional[dict[str, str]] = None,
    ):
        self.store = store
        self.patch_function = patch_function
        self.export_index = export_index
        self.applied: list[CodePatch] = []

    def __call__(self, fix: str, error: ParsedError) -> Optional[CodePatch]:
        if not error.file:
            logger.warning(f"Cannot apply fix without a file: {error.message}")
            return None

        try:
            content = self.store.read(error.file)
        except WorkspaceError as e:
            logger.warning(f"Fix not applied: {e}")
            return None

        patch = None
        if self.patch_function is not None:
            try:
                patch = self.patch_function(error, content, fix)
            except Exception as e:
                logger.warning(f"Patch generation failed for {error.file}: {e}")
        if patch is None:
            patch = rule_based_patch(error, content, error.file, self.export_index)
        if patch is None:
            logger.info(f"No patch available for {error.location}: {error.message}")
            return None

        target = patch.file or error.file
        if target != error.file:
            try:
                content = self.store.read(target)
            except WorkspaceError as e:
                logger.warning(f"Fix not applied: {e}")
                return None

        try:
            updated = apply_patch(content, patch)
        except PatchError as e:
            logger.warning(f"Fix not applied: {e}")
            return None

        if updated == content:
            return None

        self.store.write(target, updated)
        self.applied.append(patch)
        logger.info(f"Applied patch to {target}: {patch.description or patch.mode}")
        return patch
