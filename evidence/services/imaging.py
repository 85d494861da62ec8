import io
import logging

from PIL import Image

from evidence.schemas.capture import BoundingRegion, Viewport

logger = logging.getLogger(__name__)


def image_size(png: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(png)) as img:
        return img.size


def crop_png(png: bytes, region: BoundingRegion, viewport: Viewport) -> bytes:
    """Crop a viewport screenshot to `region` (CSS pixels).

    The screenshot may be larger than the viewport on high-DPI displays, so
    the region is scaled by image width / viewport width.
    """
    with Image.open(io.BytesIO(png)) as img:
        full_width, full_height = img.size
        scale = full_width / viewport.width if viewport.width else 1.0
        left = max(0, int(round(region.x * scale)))
        top = max(0, int(round(region.y * scale)))
        right = min(full_width, int(round(region.right * scale)))
        bottom = min(full_height, int(round(region.bottom * scale)))
        if right <= left or bottom <= top:
            logger.warning("Empty crop box %s on %dx%d image, keeping full image", region, full_width, full_height)
            return png
        cropped = img.crop((left, top, right, bottom))
        out = io.BytesIO()
        cropped.save(out, format="PNG")
        return out.getvalue()
