from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterator

from commands.types import (
    BUFFER_UNITS,
    COMMAND_TYPES,
    MEASURE_TYPES,
    AddFeature,
    Buffer,
    MapCommand,
    Measure,
    ModifyFeature,
    RemoveFeature,
    StyleFeature,
    ZoomTo,
)
from layers.types import Feature


log = logging.getLogger(__name__)

# `[name` followed by whitespace (arguments) or the closing bracket.
_DIRECTIVE_START_RE = re.compile(r"\[([A-Za-z0-9_]+)(?=[\s\]])")
_NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")

_CLOSERS = {"]": "[", "}": "{"}


@dataclass(frozen=True)
class ParsedCommand:
    """
    A recognized directive before its arguments are type-checked.
    """

    type: str
    args: tuple[str, ...]


class _InvalidDirective(ValueError):
    pass


def _closing_bracket(text: str, start: int) -> int | None:
    """
    Index of the `]` balancing the `[` at `start`, or None.

    Brackets and braces nest; anything inside a JSON string literal is opaque.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "[{":
            stack.append(ch)
        elif ch in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[ch]:
                return None
            stack.pop()
            if not stack:
                return i if ch == "]" else None
    return None


def split_arguments(args: str) -> list[str]:
    """
    Split on whitespace that is outside JSON nesting and string literals.
    """
    out: list[str] = []
    buf: list[str] = []
    depth = 0
    in_string = False
    escaped = False
    for ch in args:
        if in_string:
            buf.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch.isspace() and depth == 0:
            if buf:
                out.append("".join(buf))
                buf = []
            continue

        buf.append(ch)
        if ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth = max(0, depth - 1)
    if buf:
        out.append("".join(buf))
    return out


def _iter_directives(text: str) -> Iterator[tuple[str, str]]:
    pos = 0
    while True:
        m = _DIRECTIVE_START_RE.search(text, pos)
        if m is None:
            return
        name = m.group(1)
        if name not in COMMAND_TYPES:
            # Not ours; a directive may still be nested inside the prose bracket.
            pos = m.start() + 1
            continue
        end = _closing_bracket(text, m.start())
        if end is None:
            log.debug("directive_skipped Unterminated directive %r at %d", name, m.start())
            pos = m.start() + 1
            continue
        yield name, text[m.end() : end]
        pos = end + 1


def parse_map_commands(text: str) -> list[ParsedCommand]:
    """
    Recognized directives in `text`, left to right. Arguments are not validated here.
    """
    if not text:
        return []
    return [
        ParsedCommand(type=name, args=tuple(split_arguments(raw)))
        for name, raw in _iter_directives(text)
    ]


def _number(value: str, what: str) -> float:
    if not _NUMBER_RE.fullmatch(value):
        raise _InvalidDirective(f"{what} is not a number: {value!r}")
    out = float(value)
    if not math.isfinite(out):
        raise _InvalidDirective(f"{what} is not finite: {value!r}")
    return out


def _json_object(value: str, what: str) -> dict[str, Any]:
    obj = json.loads(value)
    if not isinstance(obj, dict):
        raise _InvalidDirective(f"{what} must be a JSON object")
    return obj


def _feature(value: str) -> Feature:
    return Feature.from_geojson(json.loads(value))


def _require(args: tuple[str, ...], n: int, name: str) -> None:
    if len(args) < n:
        raise _InvalidDirective(f"{name} needs at least {n} argument(s), got {len(args)}")


def _convert(parsed: ParsedCommand) -> MapCommand:
    args = parsed.args
    kind = parsed.type

    if kind == "zoom_to":
        _require(args, 2, kind)
        lat = _number(args[0], "latitude")
        lon = _number(args[1], "longitude")
        zoom = int(_number(args[2], "zoom")) if len(args) > 2 else None
        return ZoomTo(coordinates=(lat, lon), zoom=zoom)

    if kind == "add_feature":
        _require(args, 1, kind)
        return AddFeature(
            feature=_feature(args[0]),
            layer_id=args[1] if len(args) > 1 else None,
        )

    if kind == "modify_feature":
        _require(args, 2, kind)
        return ModifyFeature(
            feature_id=args[0], properties=_json_object(args[1], "properties")
        )

    if kind == "remove_feature":
        _require(args, 1, kind)
        return RemoveFeature(
            feature_id=args[0], layer_id=args[1] if len(args) > 1 else None
        )

    if kind == "style_feature":
        _require(args, 2, kind)
        return StyleFeature(feature_id=args[0], style=_json_object(args[1], "style"))

    if kind == "measure":
        _require(args, 2, kind)
        if args[0] not in MEASURE_TYPES:
            raise _InvalidDirective(f"Unknown measurement type: {args[0]!r}")
        return Measure(
            measure_type=args[0],  # type: ignore[arg-type]
            features=tuple(_feature(a) for a in args[1:]),
        )

    if kind == "buffer":
        _require(args, 3, kind)
        if args[2] not in BUFFER_UNITS:
            raise _InvalidDirective(f"Unknown buffer units: {args[2]!r}")
        return Buffer(
            feature=_feature(args[0]),
            distance=_number(args[1], "distance"),
            units=args[2],  # type: ignore[arg-type]
        )

    raise _InvalidDirective(f"Unknown command type: {kind!r}")


def convert_to_map_command(
    parsed: ParsedCommand, *, logger: logging.Logger | None = None
) -> MapCommand | None:
    """
    Typed command for a parsed directive, or None when any argument is invalid.
    """
    try:
        return _convert(parsed)
    except (ValueError, TypeError, RecursionError) as e:
        (logger or log).debug(
            "directive_dropped type=%s args=%r reason=%s", parsed.type, parsed.args, e
        )
        return None


def extract_map_commands(
    text: str, *, logger: logging.Logger | None = None
) -> list[MapCommand]:
    """
    Every valid command in `text`, in order. Never raises; malformed directives are dropped.
    """
    out: list[MapCommand] = []
    for parsed in parse_map_commands(text or ""):
        cmd = convert_to_map_command(parsed, logger=logger)
        if cmd is not None:
            out.append(cmd)
    return out
