from __future__ import annotations

import math
from pathlib import Path

import pytest

from boomsheets_animations import (
    Animation,
    Frame,
    Point,
    find_duplicate_states,
    load_animations,
    parse_animations_text,
    save_animations,
    serialize_animations,
)
from sheet_errors import FormatError, MissingAttributeError

SAMPLE = """imagePath="hero.png"
version="1.0"
# idle loop
animation state="IDLE"
frame x="0" y="0" w="16" h="16" originx="8" originy="16" duration="100"
point label="HILT" x="4" y="4"
blank duration="50"
"""


def test_parse_sample() -> None:
    animations = parse_animations_text(SAMPLE)

    assert len(animations) == 1
    idle = animations[0]
    assert idle.state == "IDLE"
    assert idle.key == "IDLE"
    assert idle.frames[0] == Frame(
        x=0, y=0, w=16, h=16, originx=8, originy=16, duration="100", points=[Point("HILT", 4, 4)]
    )
    assert idle.frames[1] == Frame(duration="50")


def test_state_key_is_normalized() -> None:
    animations = parse_animations_text('animation state="Character_Swing"\n')
    assert animations[0].state == "Character_Swing"
    assert animations[0].key == "CHARACTER_SWING"


def test_bare_and_escaped_values() -> None:
    text = 'animation state="say \\"hi\\""\nframe x=3 w=10  h=2.5 flipx=1 flipy="0"\n'
    animation = parse_animations_text(text)[0]

    assert animation.state == 'say "hi"'
    frame = animation.frames[0]
    assert (frame.x, frame.w, frame.h) == (3, 10, 2.5)
    assert frame.flipx is True
    assert frame.flipy is False


def test_flags_need_a_one() -> None:
    frame = parse_animations_text('animation state="A"\nframe flipx="2" flipy="true"\n')[0].frames[0]
    assert frame.flipx is False
    assert frame.flipy is False


def test_unparsable_numbers_default_to_zero() -> None:
    frame = parse_animations_text('animation state="A"\nframe x="abc" w="12px"\n')[0].frames[0]
    assert frame.x == 0
    assert frame.w == 12


def test_infinite_frame_numbers_default_to_zero() -> None:
    frame = parse_animations_text('animation state="A"\nframe w="Infinity" x="-Infinity" h="1e999"\n')[0].frames[0]
    assert (frame.x, frame.w, frame.h) == (0, 0, 0)


def test_point_without_coordinates_is_nan() -> None:
    point = parse_animations_text('animation state="A"\nframe\npoint label="TIP"\n')[0].frames[0].points[0]
    assert point.label == "TIP"
    assert math.isnan(point.x)
    assert math.isnan(point.y)


def test_missing_state_reports_line() -> None:
    with pytest.raises(MissingAttributeError, match="line 2") as excinfo:
        parse_animations_text('# header\nanimation x="1"\n')
    assert excinfo.value.line_number == 2
    assert isinstance(excinfo.value, FormatError)


def test_missing_point_label() -> None:
    with pytest.raises(MissingAttributeError, match="Point is missing label on line 3"):
        parse_animations_text('animation state="A"\nframe\npoint x="1" y="1"\n')


@pytest.mark.parametrize(
    ("text", "message", "line_number"),
    [
        ('frame x="1"\n', "No animation state to associate frame with on line 1", 1),
        ('animation state="A"\npoint label="P"\n', "No frame to associate point with on line 2", 2),
        ('animation state="A"\nframe x "1"\n', 'Attribute is missing "=" on line 2', 2),
        ('animation state="A"\nframe x=\n', "Attribute is missing value on line 2", 2),
        ('animation state="A"\n\nframe duration="100\n', "String missing closing quote on line 3", 3),
        ('animation state="A"\nframe x\n', 'Unexpected "x" on line 2', 2),
        ('animation state="A"\nsprite x="1"\n', 'Unexpected "sprite" on line 2', 2),
    ],
)
def test_format_errors(text: str, message: str, line_number: int) -> None:
    with pytest.raises(FormatError) as excinfo:
        parse_animations_text(text)
    assert str(excinfo.value) == message
    assert excinfo.value.line_number == line_number


def test_serialize_omits_defaults() -> None:
    animation = Animation("IDLE", [
        Frame(y=2, w=16, h=16, originx=8, originy=16, flipx=True, duration="100", points=[Point("HILT", 4, 4)]),
        Frame(duration="50"),
    ])

    assert serialize_animations([animation]) == (
        'animation state="IDLE"\n'
        'frame y="2" w="16" h="16" originx="8" originy="16" flipx="1" duration="100"\n'
        'point label="HILT" x="4" y="4"\n'
        'frame duration="50"\n'
    )


def test_serialize_numbers() -> None:
    text = serialize_animations([Animation("A", [Frame(x=1.5, w=16.0, points=[Point("P", math.nan, -2)])])])
    assert 'frame x="1.5" w="16"' in text
    assert 'point label="P" x="NaN" y="-2"' in text


def test_serialize_separates_animations() -> None:
    text = serialize_animations([Animation("A"), Animation("B")])
    assert text == 'animation state="A"\n\nanimation state="B"\n'


def test_round_trip() -> None:
    animations = [
        Animation('slash \\ "quoted"', [
            Frame(x=3, y=4, w=5, h=6, originx=1, originy=2, flipy=True, duration="0.25",
                  points=[Point("ENDPOINT", 7, 8)]),
        ]),
        Animation("RUN", [Frame(w=1, h=1), Frame(x=1, w=1, h=1, flipx=True)]),
    ]

    assert parse_animations_text(serialize_animations(animations)) == animations


def test_duplicate_states_are_kept() -> None:
    animations = parse_animations_text('animation state="IDLE"\nanimation state="idle"\nanimation state="RUN"\n')

    assert [animation.state for animation in animations] == ["IDLE", "idle", "RUN"]
    assert find_duplicate_states(animations) == ["IDLE"]


def test_load_and_save(tmp_path: Path) -> None:
    path = tmp_path / "out" / "hero.animation"
    animations = parse_animations_text(SAMPLE)

    save_animations(path, animations)

    assert path.read_text(encoding="utf-8").startswith('animation state="IDLE"\n')
    assert load_animations(path) == animations
