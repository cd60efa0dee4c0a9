import argparse
import json
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from boomsheets_animations import (
    Animation,
    find_duplicate_states,
    load_animations,
    save_animations,
    warn_duplicate_states,
)
from frame_dedup import dedup_sheet
from overlay_migrations import (
    DEFAULT_MIGRATIONS,
    MigrationRule,
    animations_from_groups,
    migrate_animations,
    parse_migration_rules,
    render_overlay_sheet,
    resolve_geometry,
)
from sheet_errors import ConfigError, DuplicateStateError, SpriteSheetError
from sheet_packing import Packer, make_packer, pack_items

CONFIG_PATH = "config.json"

DEFAULT_SHEET_CONFIG: Dict[str, Any] = {
    "padding": 1,
    "dedup": True,
    "reject_duplicate_states": False,
    "sheet": {
        "width": None,
        "height": None
    },
    "migrations": None
}


@dataclass
class SheetConfig:
    padding: int = 1
    dedup: bool = True
    reject_duplicate_states: bool = False
    sheet_dimensions: Tuple[Optional[int], Optional[int]] = (None, None)
    migrations: Dict[str, MigrationRule] = field(default_factory=lambda: dict(DEFAULT_MIGRATIONS))

    def final_packer(self) -> Packer:
        max_width, max_height = self.sheet_dimensions
        return make_packer(max_width=max_width, max_height=max_height)


def deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists() or path.stat().st_size == 0:
        raise ConfigError(f"Config file {path} does not exist or is empty.")
    try:
        with path.open("r", encoding="utf-8") as handle:
            overrides = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(overrides, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object.")
    return overrides


def _optional_dimension(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        dimension = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid sheet {name}: {value!r}") from exc
    if dimension <= 0:
        raise ConfigError(f"Sheet {name} must be greater than zero.")
    return dimension


def sheet_config_from_json(overrides: Dict[str, Any]) -> SheetConfig:
    config_json = json.loads(json.dumps(DEFAULT_SHEET_CONFIG))
    config_json = deep_merge(config_json, overrides)

    try:
        padding = int(config_json.get("padding"))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid padding value: {config_json.get('padding')!r}") from exc
    if padding < 0:
        raise ConfigError("padding must not be negative.")

    sheet_json = config_json.get("sheet")
    if not isinstance(sheet_json, dict):
        raise ConfigError("sheet must be a JSON object with width and height.")
    sheet_dimensions = (
        _optional_dimension(sheet_json.get("width"), "width"),
        _optional_dimension(sheet_json.get("height"), "height"),
    )

    migrations_json = config_json.get("migrations")
    migrations = dict(DEFAULT_MIGRATIONS) if migrations_json is None else parse_migration_rules(migrations_json)

    return SheetConfig(
        padding=padding,
        dedup=bool(config_json.get("dedup")),
        reject_duplicate_states=bool(config_json.get("reject_duplicate_states")),
        sheet_dimensions=sheet_dimensions,
        migrations=migrations,
    )


def load_sheet_config(path: Optional[pathlib.Path] = None) -> SheetConfig:
    if path is None:
        default_path = pathlib.Path(CONFIG_PATH)
        if not default_path.exists():
            return SheetConfig()
        path = default_path
    return sheet_config_from_json(load_config(path))


def check_duplicate_states(animations: Sequence[Animation], reject: bool) -> None:
    if not reject:
        warn_duplicate_states(animations)
        return
    duplicates = find_duplicate_states(animations)
    if duplicates:
        raise DuplicateStateError(f"Animation states defined more than once: {', '.join(duplicates)}")


def update_sheet(
    image: Image.Image,
    animations: Sequence[Animation],
    rules: Optional[Dict[str, MigrationRule]] = None,
    padding: int = 1,
    pack: Packer = pack_items,
) -> Tuple[Image.Image, List[Animation]]:
    migrated = migrate_animations(animations, rules)
    groups = [group for entry in migrated for group in entry.groups]

    resolve_geometry(groups, padding)
    packed = pack(groups)
    sheet = render_overlay_sheet(image, packed, padding)

    return sheet, animations_from_groups(migrated)


def build_sheet(
    image: Image.Image,
    animations: Sequence[Animation],
    config: Optional[SheetConfig] = None,
) -> Tuple[Image.Image, List[Animation]]:
    if config is None:
        config = SheetConfig()

    check_duplicate_states(animations, config.reject_duplicate_states)

    if not config.dedup:
        return update_sheet(image, animations, config.migrations, config.padding, config.final_packer())

    sheet, updated = update_sheet(image, animations, config.migrations, config.padding)
    result = dedup_sheet(sheet, updated, config.padding, config.final_packer())
    return result.image, result.animations


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Composite, deduplicate and repack the sprite sheet described by an .animation file."
    )
    parser.add_argument("animation", type=pathlib.Path, help=".animation file describing the frames")
    parser.add_argument("image", type=pathlib.Path, help="source sprite sheet image")
    parser.add_argument("--config", type=pathlib.Path, default=None,
                        help=f"JSON config file (default: {CONFIG_PATH} when present)")
    parser.add_argument("--output-dir", type=pathlib.Path, default=None,
                        help="where to write the result (default: <animation dir>/generated)")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _parse_args(argv)

    if not args.animation.is_file():
        raise SystemExit(f"Missing .animation file: {args.animation}")
    if not args.image.is_file():
        raise SystemExit(f"Missing image file: {args.image}")

    try:
        with Image.open(args.image) as source_image:
            image = source_image.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        raise SystemExit(f"Could not read image {args.image}: {exc}") from exc

    try:
        config = load_sheet_config(args.config)
        animations = load_animations(args.animation)
        sheet_image, animations = build_sheet(image, animations, config)
    except SpriteSheetError as exc:
        raise SystemExit(str(exc)) from exc

    output_dir = args.output_dir or args.animation.parent / "generated"
    output_dir.mkdir(parents=True, exist_ok=True)

    sheet_path = output_dir / (args.animation.stem + ".png")
    animation_path = output_dir / (args.animation.stem + ".animation")

    sheet_image.save(sheet_path, format="PNG")
    save_animations(animation_path, animations)

    frame_count = sum(len(animation.frames) for animation in animations)
    print(f"Processed {len(animations)} animations with {frame_count} frames.")
    print(f"Sprite sheet saved to {sheet_path.resolve()} with size {sheet_image.width}x{sheet_image.height} pixels.")
    print(f"Animation data saved to {animation_path.resolve()}.")


if __name__ == "__main__":
    main()
