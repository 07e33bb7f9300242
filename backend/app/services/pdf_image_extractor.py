"""Extract embedded raster images from brochure PDFs."""

import asyncio
import base64
import io
import logging
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple

import pdfplumber
from PIL import Image

from app.services.file_storage import FileStorage, StorageError

logger = logging.getLogger(__name__)

# Filters out icons, bullets and logos
MIN_IMAGE_WIDTH = 100
MIN_IMAGE_HEIGHT = 100
MIN_IMAGE_AREA = 20000

MAX_IMAGES_PER_PDF = 50
JPEG_QUALITY = 85
MAX_DIMENSION = 2000
RENDER_RESOLUTION = 150


@dataclass
class ExtractedImage:
    page: int
    url: str
    width: int
    height: int
    format: str = "jpeg"
    alt: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def is_large_enough(width: float, height: float) -> bool:
    return (
        width >= MIN_IMAGE_WIDTH
        and height >= MIN_IMAGE_HEIGHT
        and width * height >= MIN_IMAGE_AREA
    )


def optimize_image(image: Image.Image) -> Tuple[bytes, int, int]:
    """Downscale to MAX_DIMENSION and re-encode as progressive JPEG."""
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((MAX_DIMENSION, MAX_DIMENSION), Image.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=JPEG_QUALITY, progressive=True, optimize=True)
    return buffer.getvalue(), image.width, image.height


def _render_page_images(pdf_bytes: bytes) -> List[Tuple[int, bytes, int, int]]:
    rendered = []

    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        for page_number, page in enumerate(pdf.pages, start=1):
            for image_info in page.images:
                if len(rendered) >= MAX_IMAGES_PER_PDF:
                    logger.info(f"Reached max images limit ({MAX_IMAGES_PER_PDF})")
                    return rendered

                src_width, src_height = image_info.get("srcsize") or (0, 0)
                if not is_large_enough(src_width, src_height):
                    continue

                bbox = (
                    max(image_info["x0"], 0),
                    max(image_info["top"], 0),
                    min(image_info["x1"], page.width),
                    min(image_info["bottom"], page.height),
                )
                if bbox[2] - bbox[0] < 1 or bbox[3] - bbox[1] < 1:
                    continue

                try:
                    crop = page.crop(bbox).to_image(resolution=RENDER_RESOLUTION).original
                    data, width, height = optimize_image(crop)
                except Exception as e:
                    logger.warning(f"Skipping image on page {page_number}: {e}")
                    continue

                rendered.append((page_number, data, width, height))

    return rendered


async def extract_images_from_pdf(
    pdf_bytes: bytes,
    prospect_id: str,
    storage: Optional[FileStorage] = None,
) -> List[ExtractedImage]:
    """
    Render, optimize and store the brochure's images.

    Returns an empty list rather than raising: images are a nice-to-have
    and must not fail the pipeline.
    """
    try:
        rendered = await asyncio.to_thread(_render_page_images, pdf_bytes)
    except Exception as e:
        logger.error(f"Image extraction failed for prospect {prospect_id}: {e}")
        return []

    images = []
    for index, (page_number, data, width, height) in enumerate(rendered, start=1):
        filename = f"page{page_number}_img{index}.jpg"
        url = None
        if storage is not None:
            try:
                url = await storage.save(data, filename, folder=f"prospects/extracted/{prospect_id}")
            except StorageError as e:
                logger.warning(f"Storage unavailable for {filename}, embedding as data URL: {e}")
        if url is None:
            url = f"data:image/jpeg;base64,{base64.b64encode(data).decode('ascii')}"

        images.append(ExtractedImage(
            page=page_number,
            url=url,
            width=width,
            height=height,
            alt=f"Image from page {page_number}",
        ))

    logger.info(f"Extracted {len(images)} images from PDF for prospect {prospect_id}")
    return images
