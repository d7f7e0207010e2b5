"""
Recovering parser for model actions.

The model is asked to answer with one action per turn, in either of two
encodings::

    ```json
    {"thought": "...", "action": "get_pto_balance", "action_input": {}}
    ```

    TOOL_CALL: get_pto_balance
    PARAMETERS: {}

and to finish with ``"action": "final_answer"`` (or a ``FINAL_ANSWER:`` line).
Only the first action in the text is used. Argument objects go through
``repair_json`` before giving up, which fixes the damage typical of truncated
or sloppy generations: trailing commas, empty values, unterminated strings and
unclosed brackets.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from approvalflow.exceptions import ParseError

FINAL_ACTIONS = frozenset({"final_answer", "none", "no_tool"})

FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n?")
TOOL_CALL_RE = re.compile(r"^[ \t]*TOOL_CALL:[ \t]*([A-Za-z_][\w.-]*)[ \t]*$", re.MULTILINE)
PARAMETERS_RE = re.compile(r"^[ \t]*PARAMETERS:[ \t]*", re.MULTILINE)
FINAL_ANSWER_RE = re.compile(r"^[ \t]*FINAL_ANSWER:[ \t]*", re.MULTILINE)

_LITERALS = {"True": "true", "False": "false", "None": "null"}


@dataclass(frozen=True)
class ParsedAction:
    action: str
    action_input: dict[str, Any] = field(default_factory=dict)
    thought: str = ""
    encoding: str = "fenced"

    @property
    def is_final(self) -> bool:
        return self.action in FINAL_ACTIONS

    @property
    def final_text(self) -> str:
        for key in ("response", "answer", "text", "message"):
            value = self.action_input.get(key)
            if isinstance(value, str):
                return value
        return ""


def _last_significant(out: list[str]) -> str:
    for ch in reversed(out):
        if not ch.isspace():
            return ch
    return ""


def _strip_trailing_comma(out: list[str]) -> None:
    i = len(out) - 1
    while i >= 0 and out[i].isspace():
        i -= 1
    if i >= 0 and out[i] == ",":
        del out[i]


def repair_json(text: str) -> str:
    """
    Best-effort repair of a JSON object/array literal.

    Handles, outside of strings: trailing commas before a closer, a key with no
    value (``"a": ,`` / ``"a": }``), Python ``True/False/None`` literals, and at
    the end of input an unterminated string, a dangling key and any unclosed
    brackets.
    """
    out: list[str] = []
    closers: list[str] = []
    in_string = escape = string_is_key = key_pending = False
    i, n = 0, len(text)

    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                if string_is_key:
                    key_pending = True
            i += 1
            continue

        if ch == '"':
            string_is_key = bool(closers) and closers[-1] == "}" and _last_significant(out) in "{,"
            in_string = True
            out.append(ch)
        elif ch in "{[":
            closers.append("}" if ch == "{" else "]")
            out.append(ch)
        elif ch in "}]":
            _strip_trailing_comma(out)
            if key_pending:
                out.append(":")
                key_pending = False
            if _last_significant(out) == ":":
                out.append("null")
            if closers:
                closers.pop()
            out.append(ch)
        elif ch == ":":
            key_pending = False
            out.append(ch)
        elif ch == ",":
            if _last_significant(out) == ":":
                out.append("null")
            out.append(ch)
        else:
            for literal, replacement in _LITERALS.items():
                if text.startswith(literal, i) and not (i + len(literal) < n and text[i + len(literal)].isalnum()):
                    out.append(replacement)
                    i += len(literal)
                    break
            else:
                out.append(ch)
                i += 1
            continue
        i += 1

    if in_string:
        if escape:
            out.pop()
        out.append('"')
        if string_is_key:
            key_pending = True

    if closers:
        _strip_trailing_comma(out)
        if key_pending:
            out.append(":")
        if _last_significant(out) == ":":
            out.append("null")
        while closers:
            _strip_trailing_comma(out)
            out.append(closers.pop())

    return "".join(out)


def load_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object, trying the repair pass before raising ParseError."""
    text = text.strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        repaired = repair_json(text)
        try:
            value = json.loads(repaired)
        except json.JSONDecodeError as e:
            raise ParseError(f"Could not parse JSON arguments: {e.msg}", {"text": text[:200]}) from e
    if not isinstance(value, dict):
        raise ParseError("Expected a JSON object", {"text": text[:200]})
    return value


def extract_object(text: str, start: int) -> str:
    """
    Return the brace-balanced object that starts at or after ``start``.

    Quotes and escapes are respected. If the text ends before the object
    closes, the truncated remainder is returned for repair.
    """
    begin = text.find("{", start)
    if begin == -1:
        return ""
    depth = 0
    in_string = escape = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin : i + 1]
    remainder = text[begin:]
    fence = remainder.find("```")
    return remainder[:fence] if fence != -1 and not in_string else remainder


def _parse_fenced(text: str, start: int) -> ParsedAction:
    payload = load_json_object(extract_object(text, start))
    action = payload.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ParseError("Action block is missing an 'action' name", {"keys": sorted(payload)})

    action_input = payload.get("action_input", {})
    if isinstance(action_input, str):
        if action in FINAL_ACTIONS:
            action_input = {"response": action_input}
        else:
            action_input = load_json_object(action_input)
    elif action_input is None:
        action_input = {}
    elif not isinstance(action_input, dict):
        raise ParseError("'action_input' must be an object", {"action": action})

    thought = payload.get("thought")
    return ParsedAction(
        action=action.strip(),
        action_input=action_input,
        thought=thought if isinstance(thought, str) else "",
        encoding="fenced",
    )


def _parse_sentinel(text: str, match: re.Match) -> ParsedAction:
    name = match.group(1)
    # PARAMETERS belong to this call only if they come before the next action line.
    following = [
        m.start() for m in (TOOL_CALL_RE.search(text, match.end()), FINAL_ANSWER_RE.search(text, match.end())) if m
    ]
    params = PARAMETERS_RE.search(text, match.end(), min(following, default=len(text)))
    arguments = load_json_object(extract_object(text, params.end())) if params else {}
    thought = text[: match.start()].strip()
    return ParsedAction(action=name, action_input=arguments, thought=thought, encoding="sentinel")


def _parse_final_sentinel(text: str, match: re.Match) -> ParsedAction:
    return ParsedAction(
        action="final_answer",
        action_input={"response": text[match.end() :].strip()},
        thought=text[: match.start()].strip(),
        encoding="sentinel",
    )


def parse_action(text: str) -> ParsedAction:
    """
    Extract the first action from raw model output.

    Raises ParseError when no action is present or the first one cannot be
    recovered.
    """
    candidates = []

    for fence in FENCE_RE.finditer(text):
        if text[fence.end() :].lstrip().startswith("{"):
            candidates.append((fence.start(), "fenced", fence))
            break

    tool_call = TOOL_CALL_RE.search(text)
    if tool_call:
        candidates.append((tool_call.start(), "sentinel", tool_call))

    final = FINAL_ANSWER_RE.search(text)
    if final:
        candidates.append((final.start(), "final", final))

    if not candidates:
        # A bare JSON object with an "action" key is accepted as well.
        stripped = text.strip()
        if stripped.startswith("{"):
            return _parse_fenced(stripped, 0)
        raise ParseError("No action found in model output", {"text": text[:200]})

    _, kind, match = min(candidates, key=lambda c: c[0])
    if kind == "fenced":
        return _parse_fenced(text, match.end())
    if kind == "sentinel":
        return _parse_sentinel(text, match)
    return _parse_final_sentinel(text, match)
