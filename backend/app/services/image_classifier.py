"""
Image classification with Gemini Vision.

Each extracted brochure image is labelled (exterior, interior, amenity,
floor plan, ...) and scored, then bucketed into an image manifest that the
mini-site uses to place images in the right sections.
"""

import asyncio
import base64
import json
import logging
from typing import List, Dict, Any, Optional

from app.services.file_storage import FileStorage
from app.services.gemini_client import GeminiClient, image_part

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 0.5

QUALITY_WEIGHT = {"high": 3, "medium": 2, "low": 1}

INTERIOR_BUCKETS = {
    "interior_living": "living",
    "interior_bedroom": "bedroom",
    "interior_kitchen": "kitchen",
    "interior_bathroom": "bathroom",
}

PODIUM_AMENITIES = {
    "amenity_pool", "amenity_gym", "amenity_kids",
    "amenity_lobby", "amenity_garden", "amenity_other",
}

CLASSIFICATION_PROMPT = """You are an expert real estate image classifier. Analyze this image from a Dubai property brochure and classify it.

Respond with a JSON object:
{
  "category": "hero|exterior|interior_living|interior_bedroom|interior_kitchen|interior_bathroom|amenity_pool|amenity_gym|amenity_kids|amenity_rooftop|amenity_garden|amenity_lobby|amenity_other|floor_plan|location_map|lifestyle|branding|unknown",
  "subcategory": "podium|rooftop|null (only for amenities)",
  "role": "hero|gallery|background|technical",
  "quality": "high|medium|low",
  "description": "Brief description in English (1-2 sentences)",
  "descriptionHe": "Brief description in Hebrew (1-2 sentences)",
  "alt": "Alt text for accessibility",
  "isHeroCandidate": true/false,
  "confidence": 0.0-1.0,
  "sectionScore": 0.0-1.0
}

Rules:
- "hero" only for stunning exterior renders showing the whole building; set isHeroCandidate for these
- "exterior" for other building exterior shots
- "floor_plan" for technical apartment layouts, "location_map" for maps and distance diagrams
- "lifestyle" for people and mood shots, "branding" for logos and text-heavy images
- quality "high" means sharp, professional, well lit; "low" means blurry or pixelated
- subcategory "podium" for ground-level amenities, "rooftop" for rooftop amenities"""


def default_classification(image: Dict[str, Any]) -> Dict[str, Any]:
    page = image.get("page", 0)
    return {
        "url": image["url"],
        "page": page,
        "width": image.get("width", 0),
        "height": image.get("height", 0),
        "category": "unknown",
        "role": "gallery",
        "quality": "medium",
        "description": "Image from brochure",
        "alt": f"Image from page {page}",
        "confidence": 0,
        "sectionScore": 0,
        "isHeroCandidate": False,
    }


def _score(value: Any, fallback: float = 0.5) -> float:
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else fallback


async def load_image_bytes(url: str, storage: Optional[FileStorage]) -> bytes:
    if url.startswith("data:"):
        return base64.b64decode(url.split(",", 1)[1])
    if storage is None:
        raise ValueError(f"No storage configured to load {url}")
    return await storage.read(url)


async def classify_image(
    image: Dict[str, Any],
    client: GeminiClient,
    storage: Optional[FileStorage] = None,
) -> Dict[str, Any]:
    """Classify one image. Never raises; failures yield the default classification."""
    classified = default_classification(image)
    try:
        data = await load_image_bytes(image["url"], storage)
        parsed = json.loads(await client.generate_json([CLASSIFICATION_PROMPT, image_part(data)]))
    except Exception as e:
        logger.error(f"Failed to classify image from page {classified['page']}: {e}")
        return classified

    classified.update({
        "category": parsed.get("category") or "unknown",
        "subcategory": parsed.get("subcategory") or None,
        "role": parsed.get("role") or "gallery",
        "quality": parsed.get("quality") if parsed.get("quality") in QUALITY_WEIGHT else "medium",
        "description": parsed.get("description") or "",
        "descriptionHe": parsed.get("descriptionHe") or None,
        "alt": parsed.get("alt") or classified["alt"],
        "confidence": _score(parsed.get("confidence")),
        "sectionScore": _score(parsed.get("sectionScore")),
        "isHeroCandidate": parsed.get("isHeroCandidate") is True,
    })
    return classified


async def classify_images(
    images: List[Dict[str, Any]],
    client: GeminiClient,
    storage: Optional[FileStorage] = None,
    delay: float = BATCH_DELAY_SECONDS,
):
    """
    Classify images in batches of five, pausing between batches.

    Returns ``(classified, manifest)``.
    """
    logger.info(f"Classifying {len(images)} images...")
    classified: List[Dict[str, Any]] = []

    for start in range(0, len(images), BATCH_SIZE):
        batch = images[start:start + BATCH_SIZE]
        results = await asyncio.gather(*(classify_image(image, client, storage) for image in batch))
        classified.extend(results)

        if start + BATCH_SIZE < len(images):
            await asyncio.sleep(delay)

    manifest = build_manifest(classified)
    logger.info(f"Classification complete. Hero: {'found' if manifest['hero'] else 'not found'}")
    return classified, manifest


def build_manifest(images: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Pick a hero image and bucket the rest by section."""
    manifest: Dict[str, Any] = {
        "hero": None,
        "exterior": [],
        "interiors": {"living": [], "bedroom": [], "kitchen": [], "bathroom": []},
        "amenities": {"podium": [], "rooftop": [], "special": []},
        "floorPlans": [],
        "locationMaps": [],
        "lifestyle": [],
        "branding": [],
        "gallery": [],
    }

    hero_candidates = [img for img in images if img.get("isHeroCandidate") and img.get("quality") == "high"]
    if hero_candidates:
        manifest["hero"] = max(hero_candidates, key=lambda img: img["confidence"] * img["sectionScore"])
    else:
        exteriors = [img for img in images if img.get("category") in ("exterior", "hero")]
        if exteriors:
            manifest["hero"] = max(exteriors, key=lambda img: img["confidence"])

    hero_url = manifest["hero"]["url"] if manifest["hero"] else None

    for img in images:
        if img["url"] == hero_url:
            continue
        category = img.get("category")

        if category in ("hero", "exterior"):
            manifest["exterior"].append(img)
        elif category in INTERIOR_BUCKETS:
            manifest["interiors"][INTERIOR_BUCKETS[category]].append(img)
        elif category in PODIUM_AMENITIES:
            bucket = "rooftop" if img.get("subcategory") == "rooftop" else "podium"
            manifest["amenities"][bucket].append(img)
        elif category == "amenity_rooftop":
            manifest["amenities"]["rooftop"].append(img)
        elif category == "floor_plan":
            manifest["floorPlans"].append(img)
        elif category == "location_map":
            manifest["locationMaps"].append(img)
        elif category == "lifestyle":
            manifest["lifestyle"].append(img)
        elif category == "branding":
            manifest["branding"].append(img)

    manifest["gallery"] = sorted(
        (img for img in images if img.get("category") not in ("branding", "floor_plan")),
        key=lambda img: QUALITY_WEIGHT.get(img.get("quality"), 2) * img.get("confidence", 0),
        reverse=True,
    )
    return manifest


def images_for_section(manifest: Dict[str, Any], section: str, count: int = 4) -> List[Dict[str, Any]]:
    """Best ``count`` images for a mini-site section, highest quality first."""
    if section == "hero":
        return [manifest["hero"]] if manifest.get("hero") else []

    if section in ("about", "overview"):
        candidates = manifest["exterior"] + manifest["lifestyle"]
    elif section in ("interiors", "units"):
        candidates = [img for bucket in manifest["interiors"].values() for img in bucket]
    elif section == "amenities":
        candidates = [img for bucket in manifest["amenities"].values() for img in bucket]
    elif section == "location":
        candidates = manifest["locationMaps"] + manifest["exterior"]
    else:
        candidates = manifest["gallery"]

    ranked = sorted(candidates, key=lambda img: QUALITY_WEIGHT.get(img.get("quality"), 2), reverse=True)
    return ranked[:count]
