import hashlib
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from boomsheets_animations import Animation, Frame, copy_animations
from sheet_errors import InconsistentFrameError
from sheet_packing import Packer, PackResult, PixelSource, pack_items

DEFAULT_PADDING = 1


@dataclass
class DedupBin:
    frames: List[Frame]
    pixels: bytes
    width: int
    height: int

    @property
    def representative(self) -> Frame:
        return self.frames[0]


@dataclass
class DedupResult:
    image: Image.Image
    animations: List[Animation]
    bins: List[DedupBin] = field(default_factory=list)


def content_key(pixels: bytes) -> str:
    return hashlib.md5(pixels).hexdigest()


def mirror_region(pixels: bytes, width: int, height: int) -> bytes:
    region = np.frombuffer(pixels, dtype=np.uint8).reshape(height, width, 4)
    return np.ascontiguousarray(region[:, ::-1]).tobytes()


def _frame_size(frame: Frame) -> Tuple[int, int]:
    usable = all(math.isfinite(value) for value in (frame.x, frame.y, frame.w, frame.h))
    if not usable or frame.w < 0 or frame.h < 0 or int(frame.w) != frame.w or int(frame.h) != frame.h:
        raise InconsistentFrameError(f"Frame at {frame.x},{frame.y} has an unusable rectangle {frame.w}x{frame.h}.")
    return int(frame.w), int(frame.h)


def match_bin(
    bin_map: Dict[str, List[DedupBin]],
    key: str,
    frame: Frame,
    pixels: bytes,
) -> Optional[DedupBin]:
    for candidate in bin_map.get(key, []):
        representative = candidate.representative
        if representative.w != frame.w or representative.h != frame.h:
            # colliding digest for a different size
            continue
        if candidate.pixels != pixels:
            continue
        return candidate
    return None


def collect_bins(
    source: PixelSource,
    animations: Sequence[Animation],
    padding: int = DEFAULT_PADDING,
) -> List[DedupBin]:
    """Group frames by exact or x-mirrored pixel content; mirrored members get flipx toggled."""
    bin_map: Dict[str, List[DedupBin]] = {}
    bins: List[DedupBin] = []

    for animation in animations:
        for frame in animation.frames:
            width, height = _frame_size(frame)
            pixels = source.get_region(int(frame.x), int(frame.y), width, height)
            key = content_key(pixels)

            matching_bin = match_bin(bin_map, key, frame, pixels)

            if matching_bin is None:
                # only the x axis is checked
                flipped_pixels = mirror_region(pixels, width, height)
                matching_bin = match_bin(bin_map, content_key(flipped_pixels), frame, flipped_pixels)

                if matching_bin is not None:
                    frame.flipx = not frame.flipx
                    frame.originx = frame.w - frame.originx

            if matching_bin is not None:
                matching_bin.frames.append(frame)
            else:
                new_bin = DedupBin([frame], pixels, width + padding * 2, height + padding * 2)
                bin_map.setdefault(key, []).append(new_bin)
                bins.append(new_bin)

    return bins


def render_bins(packed: PackResult, padding: int = DEFAULT_PADDING) -> Image.Image:
    sheet = Image.new("RGBA", (int(packed.width), int(packed.height)), (0, 0, 0, 0))

    for item in packed.items:
        dedup_bin: DedupBin = item.item
        dest_x = item.x + padding
        dest_y = item.y + padding

        width = dedup_bin.width - padding * 2
        height = dedup_bin.height - padding * 2
        if width > 0 and height > 0:
            tile = Image.frombytes("RGBA", (width, height), dedup_bin.pixels)
            sheet.paste(tile, (dest_x, dest_y))

        for frame in dedup_bin.frames:
            frame.x = dest_x
            frame.y = dest_y

    return sheet


def dedup_sheet(
    source: Union[Image.Image, PixelSource],
    animations: Sequence[Animation],
    padding: int = DEFAULT_PADDING,
    pack: Packer = pack_items,
) -> DedupResult:
    pixel_source = source if isinstance(source, PixelSource) else PixelSource(source)
    deduped = copy_animations(animations)

    bins = collect_bins(pixel_source, deduped, padding)
    packed = pack(bins)
    image = render_bins(packed, padding)

    return DedupResult(image, deduped, bins)
