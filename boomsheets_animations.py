import copy
import math
import pathlib
import re
import sys
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sheet_errors import FormatError, MissingAttributeError

SKIPPED_PREFIXES = ("#", "imagePath", "version")

FRAME_NUMBER_ATTRIBUTES = ("x", "y", "w", "h", "originx", "originy")
FRAME_FLAG_ATTRIBUTES = ("flipx", "flipy")

_NON_SPACE = re.compile(r"\S")
_SPACE = re.compile(r"\s")
_KEY_END = re.compile(r"[\s=]")
_ESCAPED_CHAR = re.compile(r"\\(.)", re.DOTALL)
_NUMBER_PREFIX = re.compile(r"[+-]?(?:Infinity|\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)")
_INTEGER_PREFIX = re.compile(r"[+-]?\d+")


@dataclass
class Point:
    label: str
    x: float
    y: float


@dataclass
class Frame:
    x: float = 0
    y: float = 0
    w: float = 0
    h: float = 0
    originx: float = 0
    originy: float = 0
    flipx: bool = False
    flipy: bool = False
    duration: str = ""
    points: List[Point] = field(default_factory=list)

    def find_point(self, label: str) -> Optional[Point]:
        wanted = label.upper()
        for point in self.points:
            if point.label.upper() == wanted:
                return point
        return None


@dataclass
class Animation:
    state: str
    frames: List[Frame] = field(default_factory=list)
    key: str = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.key = normalize_state(self.state)


def normalize_state(state: str) -> str:
    return state.upper()


def copy_animations(animations: Sequence[Animation]) -> List[Animation]:
    return [copy.deepcopy(animation) for animation in animations]


def find_duplicate_states(animations: Sequence[Animation]) -> List[str]:
    counts = Counter(animation.key for animation in animations)
    duplicates: List[str] = []
    seen = set()
    for animation in animations:
        if counts[animation.key] > 1 and animation.key not in seen:
            seen.add(animation.key)
            duplicates.append(animation.state)
    return duplicates


def _parse_number(value: Optional[str]) -> float:
    if value is None:
        return math.nan
    match = _NUMBER_PREFIX.match(value.strip())
    if not match:
        return math.nan
    number = float(match.group(0))
    if math.isfinite(number) and number.is_integer():
        return int(number)
    return number


def _parse_number_or_zero(value: Optional[str]) -> float:
    number = _parse_number(value)
    if not math.isfinite(number):
        return 0
    return number


def _parse_flag(value: Optional[str]) -> bool:
    if value is None:
        return False
    match = _INTEGER_PREFIX.match(value.strip())
    return match is not None and int(match.group(0)) == 1


def _char_is_escaped(text: str, index: int) -> bool:
    escaped = False
    while index > 0:
        index -= 1
        if text[index] != "\\":
            break
        escaped = not escaped
    return escaped


def _find_closing_quote(text: str, index: int) -> int:
    while True:
        index = text.find('"', index)
        if index < 0:
            return -1
        if not _char_is_escaped(text, index):
            return index
        index += 1


def quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def unquote(value: str) -> str:
    return _ESCAPED_CHAR.sub(r"\1", value)


def _parse_attributes(line: str, line_number: int) -> Dict[str, str]:
    attributes: Dict[str, str] = {}

    match = _SPACE.search(line)
    if not match:
        return attributes
    index = match.start()

    while True:
        match = _NON_SPACE.search(line, index)
        if not match:
            break
        index = match.start()

        key_end = _KEY_END.search(line, index)
        if not key_end or key_end.start() == index:
            token = line[index:]
            raise FormatError(f'Unexpected "{token}" on line {line_number}', line_number, token)
        key = line[index:key_end.start()]

        eq_match = _NON_SPACE.search(line, key_end.start())
        if not eq_match or line[eq_match.start()] != "=":
            raise FormatError(f'Attribute is missing "=" on line {line_number}', line_number, key)

        match = _NON_SPACE.search(line, eq_match.start() + 1)
        if not match:
            raise FormatError(f"Attribute is missing value on line {line_number}", line_number, key)
        value_start = match.start()

        if line[value_start] == '"':
            value_end = _find_closing_quote(line, value_start + 1)
            if value_end < 0:
                token = line[value_start:]
                raise FormatError(f"String missing closing quote on line {line_number}", line_number, token)
            value = unquote(line[value_start + 1:value_end])
            index = value_end + 1
        else:
            space = _SPACE.search(line, value_start)
            value_end = space.start() if space else len(line)
            value = line[value_start:value_end]
            index = value_end

        attributes[key] = value

    return attributes


def _build_frame(attributes: Dict[str, str]) -> Frame:
    numbers = {name: _parse_number_or_zero(attributes.get(name)) for name in FRAME_NUMBER_ATTRIBUTES}
    flags = {name: _parse_flag(attributes.get(name)) for name in FRAME_FLAG_ATTRIBUTES}
    return Frame(duration=attributes.get("duration") or "", **numbers, **flags)


def parse_animations_text(text: str) -> List[Animation]:
    animations: List[Animation] = []
    current_animation: Optional[Animation] = None
    current_frame: Optional[Frame] = None

    for line_number, line in enumerate(text.split("\n"), start=1):
        line = line.strip()

        if not line or line.startswith(SKIPPED_PREFIXES):
            continue

        keyword = line.split(None, 1)[0]

        if keyword == "animation":
            attributes = _parse_attributes(line, line_number)
            state = attributes.get("state")
            if not state:
                raise MissingAttributeError(
                    f"Animation is missing state name on line {line_number}", line_number, "state"
                )
            current_animation = Animation(state)
            current_frame = None
            animations.append(current_animation)
        elif keyword in ("frame", "blank"):
            if current_animation is None:
                raise FormatError(
                    f"No animation state to associate frame with on line {line_number}", line_number, keyword
                )
            current_frame = _build_frame(_parse_attributes(line, line_number))
            current_animation.frames.append(current_frame)
        elif keyword == "point":
            if current_frame is None:
                raise FormatError(
                    f"No frame to associate point with on line {line_number}", line_number, keyword
                )
            attributes = _parse_attributes(line, line_number)
            label = attributes.get("label")
            if not label:
                raise MissingAttributeError(
                    f"Point is missing label on line {line_number}", line_number, "label"
                )
            current_frame.points.append(
                Point(label, _parse_number(attributes.get("x")), _parse_number(attributes.get("y")))
            )
        else:
            raise FormatError(f'Unexpected "{keyword}" on line {line_number}', line_number, keyword)

    return animations


def _format_number(value: float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
    return str(value)


def _serialize_object(name: str, values: Sequence[Tuple[str, Any]]) -> str:
    text: List[str] = [name]

    for key, value in values:
        if isinstance(value, bool):
            if value:
                text.append(f' {key}="1"')
        elif isinstance(value, (int, float)):
            if value != 0:
                text.append(f' {key}="{_format_number(value)}"')
        elif isinstance(value, str):
            if value != "":
                text.append(f" {key}={quote(value)}")
        else:
            raise TypeError(f"Unexpected {type(value).__name__} for {key}")

    return "".join(text)


def serialize_animations(animations: Sequence[Animation]) -> str:
    lines: List[str] = []

    for animation in animations:
        lines.append(_serialize_object("animation", [("state", animation.state)]))

        for frame in animation.frames:
            lines.append(_serialize_object("frame", [
                ("x", frame.x),
                ("y", frame.y),
                ("w", frame.w),
                ("h", frame.h),
                ("originx", frame.originx),
                ("originy", frame.originy),
                ("flipx", frame.flipx),
                ("flipy", frame.flipy),
                ("duration", frame.duration),
            ]))

            for point in frame.points:
                lines.append(_serialize_object("point", [
                    ("label", point.label),
                    ("x", point.x),
                    ("y", point.y),
                ]))

        lines.append("")

    return "\n".join(lines)


def load_animations(path: pathlib.Path) -> List[Animation]:
    with path.open("r", encoding="utf-8") as handle:
        return parse_animations_text(handle.read())


def save_animations(path: pathlib.Path, animations: Sequence[Animation]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="\n") as handle:
        handle.write(serialize_animations(animations))


def warn_duplicate_states(animations: Sequence[Animation]) -> List[str]:
    duplicates = find_duplicate_states(animations)
    for state in duplicates:
        print(f"Warning: animation state {state!r} is defined more than once.", file=sys.stderr)
    return duplicates
