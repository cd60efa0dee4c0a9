import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np
from PIL import Image

from sheet_errors import PackingError

T = TypeVar("T")


@dataclass
class PackedItem(Generic[T]):
    x: int
    y: int
    width: int
    height: int
    item: T


@dataclass
class PackResult(Generic[T]):
    width: int
    height: int
    items: List[PackedItem[T]] = field(default_factory=list)


Packer = Callable[[Sequence[Any]], PackResult]


def _item_size(item: Any) -> Tuple[int, int]:
    width, height = item.width, item.height
    usable = math.isfinite(width) and math.isfinite(height)
    if not usable or width < 0 or height < 0 or int(width) != width or int(height) != height:
        raise PackingError(f"Cannot pack an item of size {width}x{height}.")
    return int(width), int(height)


def layout_for_width(
    sizes: Sequence[Tuple[int, int]],
    gap: int,
    width_limit: int,
) -> Dict[str, Any]:
    if width_limit <= 0:
        raise PackingError("width_limit must be greater than zero.")
    if not sizes:
        return {"width": 0, "height": 0, "positions": []}
    if width_limit < max(width for width, _ in sizes):
        raise PackingError("width_limit is smaller than the widest item.")

    rows: List[Dict[str, Any]] = []
    current_indices: List[int] = []
    current_width = 0
    current_height = 0

    for index, (item_width, item_height) in enumerate(sizes):
        projected_width = item_width if not current_indices else current_width + gap + item_width
        if current_indices and projected_width > width_limit:
            rows.append({
                "indices": current_indices,
                "width": current_width,
                "height": current_height,
            })
            current_indices = []
            current_width = 0
            current_height = 0
        if current_indices:
            current_width += gap
        current_indices.append(index)
        current_width += item_width
        current_height = max(current_height, item_height)

    if current_indices:
        rows.append({
            "indices": current_indices,
            "width": current_width,
            "height": current_height,
        })

    sheet_width = max(row["width"] for row in rows)
    sheet_height = sum(row["height"] for row in rows) + gap * (len(rows) - 1)

    positions: List[Optional[Tuple[int, int]]] = [None] * len(sizes)
    y_offset = 0
    for row_index, row in enumerate(rows):
        if row_index > 0:
            y_offset += gap
        x_offset = 0
        for item_index in row["indices"]:
            item_width, item_height = sizes[item_index]
            positions[item_index] = (x_offset, y_offset + (row["height"] - item_height))
            x_offset += item_width + gap
        y_offset += row["height"]

    return {"width": sheet_width, "height": sheet_height, "positions": positions}


def auto_layout(
    sizes: Sequence[Tuple[int, int]],
    gap: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> Dict[str, Any]:
    if not sizes:
        return {"width": 0, "height": 0, "positions": []}
    widths = [width for width, _ in sizes]
    widest = max(max(widths), 1)
    candidate_widths = {widest, sum(widths) + gap * (len(sizes) - 1)}
    prefix = 0
    for index, width in enumerate(widths):
        prefix += width
        candidate_widths.add(max(widest, prefix + gap * index))
    if max_width is not None:
        candidate_widths = {width for width in candidate_widths if width <= max_width}
        candidate_widths.add(max_width)

    best_layout: Optional[Dict[str, Any]] = None
    best_score: Optional[Tuple[float, float]] = None

    for width_limit in sorted(candidate_widths):
        if width_limit <= 0 or width_limit < widest:
            continue
        layout = layout_for_width(sizes, gap, width_limit)
        if max_height is not None and layout["height"] > max_height:
            continue
        diff = abs(layout["width"] - layout["height"])
        area = float(layout["width"] * max(layout["height"], 1))
        score = (diff, area)
        if best_score is None or score < best_score:
            best_layout = layout
            best_score = score

    if best_layout is None:
        raise PackingError("Items do not fit within the requested sheet size.")
    return best_layout


def pack_items(
    items: Sequence[T],
    gap: int = 0,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> PackResult[T]:
    """Shelf packer: tallest items first, rows sized for the squarest sheet."""
    sizes = [_item_size(item) for item in items]
    order = sorted(range(len(items)), key=lambda index: -sizes[index][1])
    ordered_sizes = [sizes[index] for index in order]

    layout = auto_layout(ordered_sizes, gap, max_width=max_width, max_height=max_height)

    packed: List[PackedItem[T]] = []
    for position, index in zip(layout["positions"], order):
        if position is None:
            raise PackingError("Failed to generate positions for every item.")
        width, height = sizes[index]
        packed.append(PackedItem(position[0], position[1], width, height, items[index]))

    return PackResult(layout["width"], layout["height"], packed)


def make_packer(max_width: Optional[int] = None, max_height: Optional[int] = None, gap: int = 0) -> Packer:
    def pack(items: Sequence[Any]) -> PackResult:
        return pack_items(items, gap=gap, max_width=max_width, max_height=max_height)
    return pack


class PixelSource:
    """Read-only RGBA buffer addressed by rectangular regions."""

    def __init__(self, image: Union[Image.Image, np.ndarray]) -> None:
        if isinstance(image, Image.Image):
            pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
        else:
            pixels = np.asarray(image, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] != 4:
            raise ValueError("PixelSource needs an RGBA buffer shaped (height, width, 4).")
        self.pixels = pixels.copy()
        self.pixels.setflags(write=False)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    def get_region(self, x: int, y: int, w: int, h: int) -> bytes:
        # pixels outside the buffer read as transparent black
        region = np.zeros((h, w, 4), dtype=np.uint8)
        left, top = max(x, 0), max(y, 0)
        right, bottom = min(x + w, self.width), min(y + h, self.height)
        if right > left and bottom > top:
            region[top - y:bottom - y, left - x:right - x] = self.pixels[top:bottom, left:right]
        return region.tobytes()
