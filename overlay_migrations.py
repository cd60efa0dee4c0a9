import copy
import math
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image, ImageOps

from boomsheets_animations import Animation, Frame, Point, normalize_state
from sheet_errors import ConfigError, DependencyMissingError, InconsistentFrameError, MigrationError
from sheet_packing import PackResult

DEFAULT_PADDING = 1


class MigrationKind(Enum):
    IDENTITY = "identity"
    DELETE = "delete"
    COMPOSE = "compose"


@dataclass(frozen=True)
class CompositeFamily:
    family: str
    anchor_label: str = "HILT"
    endpoint_label: Optional[str] = None
    output_state: Optional[str] = None

    def output_for(self, primary_key: str) -> str:
        if self.output_state:
            return self.output_state
        return f"{primary_key}_{normalize_state(self.family)}"


@dataclass(frozen=True)
class MigrationRule:
    kind: MigrationKind
    families: Tuple[CompositeFamily, ...] = ()


IDENTITY_RULE = MigrationRule(MigrationKind.IDENTITY)
DELETE_RULE = MigrationRule(MigrationKind.DELETE)

DEFAULT_MIGRATIONS: Dict[str, MigrationRule] = {
    # attachments, only consumed by CHARACTER_SWING
    "HAND": DELETE_RULE,
    "HILT": DELETE_RULE,
    "CHARACTER_SWING": MigrationRule(MigrationKind.COMPOSE, (
        CompositeFamily("HILT", anchor_label="HILT", endpoint_label="ENDPOINT", output_state="CHARACTER_SWING_HILT"),
        CompositeFamily("HAND", anchor_label="HILT", output_state="CHARACTER_SWING_HAND"),
    )),
}


@dataclass
class OverlayMember:
    frame: Frame
    offsetx: float = 0
    offsety: float = 0


@dataclass
class OverlayGroup:
    overlayed: List[OverlayMember]
    out_frame: Frame
    width: float = 0
    height: float = 0


@dataclass
class MigratedAnimation:
    state: str
    groups: List[OverlayGroup] = field(default_factory=list)


def parse_migration_rules(raw_rules: Dict[str, Any]) -> Dict[str, MigrationRule]:
    if not isinstance(raw_rules, dict):
        raise ConfigError("migrations must be a JSON object keyed by state name.")

    rules: Dict[str, MigrationRule] = {}
    for state, raw_rule in raw_rules.items():
        if not isinstance(raw_rule, dict):
            raise ConfigError(f"Migration for {state} must be a JSON object.")
        try:
            kind = MigrationKind(str(raw_rule.get("kind", "identity")).lower())
        except ValueError as exc:
            raise ConfigError(f"Unknown migration kind for {state}: {raw_rule.get('kind')!r}") from exc

        families: List[CompositeFamily] = []
        for raw_family in raw_rule.get("families") or []:
            if not isinstance(raw_family, dict) or not raw_family.get("family"):
                raise ConfigError(f"Every family of {state} needs a 'family' state name.")
            families.append(CompositeFamily(
                family=str(raw_family["family"]),
                anchor_label=str(raw_family.get("anchor") or "HILT"),
                endpoint_label=raw_family.get("endpoint") or None,
                output_state=raw_family.get("output") or None,
            ))
        if kind is MigrationKind.COMPOSE and not families:
            raise ConfigError(f"Compose migration for {state} has no families.")

        rules[normalize_state(state)] = MigrationRule(kind, tuple(families))
    return rules


def create_groups(frames: Sequence[Frame]) -> List[OverlayGroup]:
    groups: List[OverlayGroup] = []
    for frame in frames:
        out_frame = Frame(
            w=frame.w,
            h=frame.h,
            originx=frame.originx,
            originy=frame.originy,
            duration=frame.duration,
            points=copy.deepcopy(frame.points),
        )
        groups.append(OverlayGroup([OverlayMember(frame)], out_frame))
    return groups


def find_animation(animations: Sequence[Animation], state: str) -> Optional[Animation]:
    key = normalize_state(state)
    for animation in animations:
        if animation.key == key:
            return animation
    return None


def _is_usable(x: float, y: float) -> bool:
    return math.isfinite(x) and math.isfinite(y)


def compose_family(
    primary: Animation,
    animations: Sequence[Animation],
    family: CompositeFamily,
) -> MigratedAnimation:
    secondary = find_animation(animations, family.family)
    if secondary is None:
        raise DependencyMissingError(primary.state, family.family)

    if not secondary.frames:
        raise MigrationError(f"{secondary.state} has no frames.")

    groups = create_groups(primary.frames)
    if len(secondary.frames) > max(len(groups) - 1, 0):
        raise MigrationError(
            f"{secondary.state} has {len(secondary.frames)} frames but {primary.state} "
            f"only has {max(len(groups) - 1, 0)} to attach them to."
        )

    if groups:
        # the first frame is left bare
        groups[0].out_frame.points = []

    for group, frame in zip(groups[1:], secondary.frames):
        base_frame = group.overlayed[0].frame
        anchor = base_frame.find_point(family.anchor_label)
        anchor_x, anchor_y = (anchor.x, anchor.y) if anchor else (0, 0)
        if not _is_usable(anchor_x, anchor_y):
            raise MigrationError(
                f"{primary.state} has a {family.anchor_label} point without usable coordinates."
            )

        group.overlayed.append(OverlayMember(
            frame,
            offsetx=anchor_x - base_frame.originx,
            offsety=anchor_y - base_frame.originy,
        ))

        if family.endpoint_label:
            endpoint = frame.find_point(family.endpoint_label)
            end_x, end_y = (endpoint.x, endpoint.y) if endpoint else (0, 0)
            if not _is_usable(end_x, end_y):
                raise MigrationError(
                    f"{secondary.state} has a {family.endpoint_label} point without usable coordinates."
                )
            group.out_frame.points = [Point(
                family.endpoint_label,
                anchor_x - frame.originx + end_x,
                anchor_y - frame.originy + end_y,
            )]
        else:
            group.out_frame.points = []

    return MigratedAnimation(family.output_for(primary.key), groups)


def migrate_animation(
    animation: Animation,
    animations: Sequence[Animation],
    rules: Dict[str, MigrationRule],
) -> List[MigratedAnimation]:
    rule = rules.get(animation.key, IDENTITY_RULE)

    if rule.kind is MigrationKind.DELETE:
        return []
    if rule.kind is MigrationKind.IDENTITY:
        return [MigratedAnimation(animation.state, create_groups(animation.frames))]

    migrated: List[MigratedAnimation] = []
    for family in rule.families:
        try:
            migrated.append(compose_family(animation, animations, family))
        except MigrationError as exc:
            print(f"Warning: skipping {family.output_for(animation.key)}: {exc}", file=sys.stderr)
    return migrated


def migrate_animations(
    animations: Sequence[Animation],
    rules: Optional[Dict[str, MigrationRule]] = None,
) -> List[MigratedAnimation]:
    if rules is None:
        rules = DEFAULT_MIGRATIONS
    migrated: List[MigratedAnimation] = []
    for animation in animations:
        migrated.extend(migrate_animation(animation, animations, rules))
    return migrated


def resolve_geometry(groups: Sequence[OverlayGroup], padding: int = DEFAULT_PADDING) -> None:
    """Fix each group's output origin, then its size; size depends on the resolved origin."""
    for group in groups:
        out_frame = group.out_frame

        prev_origin_x = out_frame.originx
        prev_origin_y = out_frame.originy

        for member in group.overlayed:
            out_frame.originx = max(out_frame.originx, member.frame.originx - member.offsetx)
            out_frame.originy = max(out_frame.originy, member.frame.originy - member.offsety)

        origin_shift_x = out_frame.originx - prev_origin_x
        origin_shift_y = out_frame.originy - prev_origin_y

        for point in out_frame.points:
            point.x += origin_shift_x
            point.y += origin_shift_y

        for member in group.overlayed:
            out_frame.w = max(
                out_frame.w,
                out_frame.originx - member.frame.originx + member.frame.w + member.offsetx,
            )
            out_frame.h = max(
                out_frame.h,
                out_frame.originy - member.frame.originy + member.frame.h + member.offsety,
            )

        group.width = out_frame.w + padding * 2
        group.height = out_frame.h + padding * 2


def _source_box(frame: Frame) -> Tuple[int, int, int, int]:
    if not all(math.isfinite(value) for value in (frame.x, frame.y, frame.w, frame.h)):
        raise InconsistentFrameError(
            f"Frame at {frame.x},{frame.y} has an unusable rectangle {frame.w}x{frame.h}."
        )
    left = int(round(frame.x))
    top = int(round(frame.y))
    return left, top, left + int(round(frame.w)), top + int(round(frame.h))


def render_overlay_sheet(
    source: Image.Image,
    packed: PackResult,
    padding: int = DEFAULT_PADDING,
) -> Image.Image:
    image = source if source.mode == "RGBA" else source.convert("RGBA")
    sheet = Image.new("RGBA", (int(packed.width), int(packed.height)), (0, 0, 0, 0))

    for item in packed.items:
        group: OverlayGroup = item.item
        out_frame = group.out_frame
        out_frame.x = item.x + padding
        out_frame.y = item.y + padding

        for member in group.overlayed:
            frame = member.frame
            if frame.w <= 0 or frame.h <= 0:
                continue

            tile = image.crop(_source_box(frame))
            if frame.flipx:
                tile = ImageOps.mirror(tile)
            if frame.flipy:
                tile = ImageOps.flip(tile)

            dest_x = out_frame.x + out_frame.originx - frame.originx + member.offsetx
            dest_y = out_frame.y + out_frame.originy - frame.originy + member.offsety
            sheet.alpha_composite(tile, dest=(int(round(dest_x)), int(round(dest_y))))

    return sheet


def animations_from_groups(migrated: Sequence[MigratedAnimation]) -> List[Animation]:
    return [
        Animation(entry.state, [group.out_frame for group in entry.groups])
        for entry in migrated
    ]
