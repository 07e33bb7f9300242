"""
Project builder - turns a StructuredProject into Project and MiniSite rows.

Everything here is pure: no database access, no I/O. The prospect processor
owns slug uniqueness and persistence.
"""

import re
from typing import Any, Dict, List, Optional

from app.schemas.structured_project import StructuredProject, PaymentPlan, Amenity
from app.services.image_classifier import images_for_section

DEFAULT_AMENITY_ICON = "Building2"
DEFAULT_HIGHLIGHT_ICON = "Award"

# Ordered: the first matching row wins. "Covered Parking" hits "park" before
# "parking" and is shown with the garden icon.
AMENITY_ICON_KEYWORDS = [
    (("pool", "swim", "בריכה", "infinity"), "Waves"),
    (("gym", "fitness", "חדר כושר", "workout"), "Dumbbell"),
    (("spa", "sauna", "ספא", "steam", "massage"), "Sparkles"),
    (("yoga", "meditation", "יוגה"), "Heart"),
    (("security", "guard", "אבטחה", "cctv", "24/7"), "Shield"),
    (("park", "garden", "גינה", "landscape"), "TreePine"),
    (("bbq", "grill", "ברביקיו"), "Flame"),
    (("rooftop", "terrace", "גג"), "Sun"),
    (("beach", "חוף"), "Umbrella"),
    (("wifi", "internet", "smart"), "Wifi"),
    (("cafe", "coffee", "קפה", "restaurant"), "Coffee"),
    (("lounge", "bar", "לאונג"), "Wine"),
    (("kid", "child", "ילד", "play"), "Baby"),
    (("nursery", "daycare"), "Baby"),
    (("pet", "dog", "חיות"), "PawPrint"),
    (("parking", "car", "חניה", "valet"), "Car"),
    (("concierge", "reception", "lobby", "קונסיירז"), "Bell"),
    (("laundry", "dry clean", "כביסה"), "Shirt"),
    (("mail", "package", "delivery"), "Package"),
    (("tennis", "squash", "court"), "Circle"),
    (("basketball", "sport"), "Trophy"),
    (("business", "meeting", "conference", "office"), "Briefcase"),
    (("co-work", "cowork"), "Users"),
    (("view", "panoram", "נוף"), "Eye"),
    (("balcon", "מרפסת"), "Square"),
]

HIGHLIGHT_ICON_KEYWORDS = [
    (("roi", "return", "תשואה"), "TrendingUp"),
    (("completion", "handover", "מסירה"), "Calendar"),
    (("unit", "apartment", "יחיד"), "Home"),
    (("floor", "קומ"), "Building2"),
    (("size", "area", "שטח"), "Ruler"),
    (("price", "מחיר"), "DollarSign"),
]

# (plan attribute, milestone label, description)
PAYMENT_PLAN_STAGES = [
    ("down_payment", "בעת הזמנה", "תשלום ראשוני"),
    ("during_construction", "במהלך הבנייה", "תשלומים שוטפים"),
    ("on_handover", "במסירה", "תשלום סופי"),
    ("post_handover", "לאחר מסירה", "תשלומים נדחים"),
]

AMENITY_CATEGORY_NAMES = {
    "wellness": "בריאות וספורט",
    "leisure": "פנאי ובידור",
    "outdoor": "שטחים פתוחים",
    "convenience": "נוחות ושירותים",
    "security": "ביטחון ופרטיות",
    "other": "מתקנים נוספים",
}
AMENITY_CATEGORY_ORDER = ["wellness", "leisure", "outdoor", "convenience", "security", "other"]

_ROI_VALUE_RE = re.compile(r"(\d+(?:\.\d+)?)")


# ============================================================================
# SLUGS
# ============================================================================

def generate_slug(text: str) -> str:
    """
    Build a URL slug.

    "DAMAC Hills 2" -> "damac-hills-2", "Special@#$Characters" -> "specialcharacters".
    """
    slug = text.lower()
    slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def next_available_slug(base_slug: str, taken: set) -> str:
    """Return base_slug, or the first free base_slug-N (N >= 2)."""
    if base_slug not in taken:
        return base_slug

    counter = 2
    while f"{base_slug}-{counter}" in taken:
        counter += 1
    return f"{base_slug}-{counter}"


# ============================================================================
# ICONS
# ============================================================================

def _match_icon(text: str, table, default: str) -> str:
    lower = (text or "").lower()
    for keywords, icon in table:
        if any(keyword in lower for keyword in keywords):
            return icon
    return default


def map_amenity_to_icon(name: str) -> str:
    return _match_icon(name, AMENITY_ICON_KEYWORDS, DEFAULT_AMENITY_ICON)


def map_highlight_to_icon(title: str) -> str:
    return _match_icon(title, HIGHLIGHT_ICON_KEYWORDS, DEFAULT_HIGHLIGHT_ICON)


# ============================================================================
# PAYMENT PLAN & AMENITIES
# ============================================================================

def format_payment_plan(plan: Optional[PaymentPlan]) -> List[Dict[str, Any]]:
    """
    Flatten a payment plan into display milestones.

    Fixed order: down payment, during construction, on handover, post handover.
    Missing or zero stages are skipped. Custom milestones are appended unless
    a milestone with the same percentage is already listed.
    """
    if plan is None:
        return []

    milestones = []
    for attr, label, description in PAYMENT_PLAN_STAGES:
        percentage = getattr(plan, attr)
        if percentage:
            milestones.append({
                "milestone": label,
                "percentage": percentage,
                "description": description,
            })

    for custom in plan.milestones:
        if any(existing["percentage"] == custom.percentage for existing in milestones):
            continue
        milestones.append({
            "milestone": custom.milestone_he or custom.milestone,
            "percentage": custom.percentage,
            "description": custom.milestone,
        })

    return milestones


def group_amenities_by_category(amenities: List[Amenity]) -> List[Dict[str, Any]]:
    """Group amenities under Hebrew category headings in display order."""
    grouped: Dict[str, List[Dict[str, str]]] = {}
    for amenity in amenities:
        category = amenity.category if amenity.category in AMENITY_CATEGORY_NAMES else "other"
        grouped.setdefault(category, []).append({
            "icon": amenity.icon or map_amenity_to_icon(amenity.name),
            "name": amenity.name_he or amenity.name,
        })

    return [
        {"category": AMENITY_CATEGORY_NAMES[category], "items": grouped[category]}
        for category in AMENITY_CATEGORY_ORDER
        if category in grouped
    ]


# ============================================================================
# PROJECT FIELDS
# ============================================================================

def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def format_unit_size(unit) -> Optional[str]:
    if unit.size_from and unit.size_to:
        return f"{_format_number(unit.size_from)}-{_format_number(unit.size_to)} {unit.size_unit}"
    if unit.size_from:
        return f"{_format_number(unit.size_from)} {unit.size_unit}"
    return None


def format_unit_price(price: Optional[float], currency: str) -> Optional[str]:
    """1_500_000 -> "1.5M AED"."""
    if not price:
        return None
    return f"{price / 1_000_000:.1f}M {currency}"


def build_gallery(project: StructuredProject, extracted_images: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    """Brochure images first (largest first), then AI gallery URLs, deduplicated by URL."""
    display_name = project.name_he or project.name

    by_area = sorted(
        extracted_images or [],
        key=lambda img: (img.get("width") or 0) * (img.get("height") or 0),
        reverse=True,
    )
    candidates = [
        {"url": img["url"], "alt": img.get("alt") or f"{display_name} - תמונה {index + 1}", "type": "image"}
        for index, img in enumerate(by_area)
        if img.get("url")
    ]
    candidates += [{"url": url, "alt": display_name, "type": "image"} for url in project.gallery]

    seen = set()
    gallery = []
    for image in candidates:
        if image["url"] in seen:
            continue
        seen.add(image["url"])
        gallery.append(image)
    return gallery


def extract_roi_percent(project: StructuredProject) -> Optional[float]:
    if project.roi_percent:
        return project.roi_percent
    for highlight in project.highlights:
        if "roi" in highlight.title.lower() or "תשואה" in highlight.title:
            match = _ROI_VALUE_RE.search(highlight.value or "")
            if match:
                return float(match.group(1))
    return None


def build_project_fields(
    project: StructuredProject,
    extracted_images: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Column values for a Project row (without id/slug/link columns)."""
    currency = project.price_currency or "AED"
    gallery = build_gallery(project, extracted_images)
    hero_image = gallery[0]["url"] if gallery else project.hero_image

    units = [
        {
            "type": unit.type,
            "typeHe": unit.type_he,
            "bedrooms": unit.bedrooms,
            "sizeFrom": unit.size_from,
            "sizeTo": unit.size_to,
            "sizeUnit": unit.size_unit,
            "priceFrom": unit.price_from,
            "priceTo": unit.price_to,
            "features": unit.features,
            "featuresHe": unit.features_he,
            "size": format_unit_size(unit),
            "price": format_unit_price(unit.price_from, currency),
            "status": "available" if unit.available is not False else "sold_out",
        }
        for unit in project.units
    ]

    highlights = [
        {
            "icon": highlight.icon or map_highlight_to_icon(highlight.title),
            "title": highlight.title_he or highlight.title,
            "titleEn": highlight.title,
            "value": highlight.value,
        }
        for highlight in project.highlights
    ]

    faqs = [
        {
            "question": item.question_he or item.question,
            "answer": item.answer_he or item.answer,
            "questionEn": item.question,
            "answerEn": item.answer,
        }
        for item in project.faq
    ]

    location = project.location
    neighborhood = {
        "description": f"{location.area}, {location.city}",
        "nearbyPlaces": [
            {"name": landmark.name, "distanceKm": landmark.distance_km, "type": landmark.type or "landmark"}
            for landmark in location.nearby_landmarks
        ],
    }

    amenities_by_category: Dict[str, List[Dict[str, Any]]] = {}
    for amenity in project.amenities:
        amenities_by_category.setdefault(amenity.category, []).append(
            amenity.model_dump(by_alias=True, exclude_none=True, exclude={"category"})
        )

    return {
        "name": project.name_he or project.name,
        "name_en": project.name,
        "tagline": project.tagline_he or project.tagline,
        "tagline_en": project.tagline,
        "description": project.description_he or project.description,
        "description_en": project.description,
        "developer": project.developer.name or "Unknown Developer",
        "developer_logo": project.developer.logo,
        "developer_info": project.developer.model_dump(mode="json", by_alias=True, exclude_none=True),
        "location": location.area_he or location.area or location.city,
        "location_en": location.area,
        "coordinates": location.coordinates.model_dump() if location.coordinates else None,
        "location_details": location.model_dump(mode="json", by_alias=True, exclude_none=True),
        "price_from": project.price_from or 0,
        "price_currency": currency,
        "roi_percent": extract_roi_percent(project),
        "completion_date": project.completion_date,
        "property_type": project.property_type or "Residential",
        "building_type": project.building_type,
        "bedrooms": ", ".join(unit.type for unit in project.units) or None,
        "hero_image": hero_image,
        "highlights": highlights,
        "amenities": group_amenities_by_category(project.amenities),
        "amenities_by_category": amenities_by_category,
        "units": units,
        "payment_plan": project.payment_plan.model_dump(mode="json", by_alias=True, exclude_none=True)
        if project.payment_plan else None,
        "payment_milestones": format_payment_plan(project.payment_plan),
        "gallery": gallery,
        "neighborhood": neighborhood,
        "faqs": faqs,
        "specs": project.specs.model_dump(mode="json", by_alias=True, exclude_none=True) if project.specs else None,
        "investment_metrics": project.investment_metrics.model_dump(mode="json", by_alias=True, exclude_none=True)
        if project.investment_metrics else None,
        "seo": project.seo.model_dump(mode="json", by_alias=True, exclude_none=True) if project.seo else None,
    }


# ============================================================================
# MINI-SITE FIELDS
# ============================================================================

def build_mini_site_fields(project: StructuredProject) -> Dict[str, Any]:
    """Column values for a MiniSite row (without id/slug/project_id)."""
    location = project.location
    manifest = project.image_manifest or None
    manifest_hero = (manifest or {}).get("hero") or {}

    def section_images(section):
        return [img["url"] for img in images_for_section(manifest, section)] if manifest else []

    if project.tagline:
        subtitle = project.tagline
    elif project.developer.name:
        subtitle = f"מאת {project.developer.name}"
    else:
        subtitle = f"ב-{location.area}"

    if project.amenities:
        features = [
            {"icon": amenity.icon or map_amenity_to_icon(amenity.name), "title": amenity.name_he or amenity.name,
             "description": amenity.category}
            for amenity in project.amenities
        ]
    else:
        features = [
            {"icon": highlight.icon or map_highlight_to_icon(highlight.title),
             "title": highlight.title_he or highlight.title, "description": highlight.value}
            for highlight in project.highlights
        ]

    pricing_items = []
    for unit in project.units:
        if unit.price_from:
            price = f"החל מ-{unit.price_from:,.0f} {project.price_currency}"
        else:
            price = "לשאלה"
        pricing_items.append({"name": unit.type, "price": price, "details": format_unit_size(unit) or ""})

    return {
        "name": project.name,
        "status": "draft",
        "hero": {
            "title": project.name_he or project.name,
            "subtitle": subtitle,
            "image": manifest_hero.get("url") or project.hero_image,
        },
        "about": {
            "title": "אודות הפרויקט",
            "content": project.description_he or project.description,
            "images": section_images("about"),
        },
        "features": features,
        "gallery": list(project.gallery) or section_images("gallery"),
        "pricing": {"title": "מחירים ויחידות", "items": pricing_items},
        "location": {
            "address": ", ".join(part for part in (location.area, location.city) if part),
            "coordinates": location.coordinates.model_dump() if location.coordinates else None,
            "nearbyLandmarks": [l.model_dump(by_alias=True, exclude_none=True) for l in location.nearby_landmarks],
            "connectivity": [c.model_dump(by_alias=True, exclude_none=True) for c in location.connectivity],
            "images": section_images("location"),
        },
        "faq": [
            {"question": item.question_he or item.question, "answer": item.answer_he or item.answer}
            for item in project.faq
        ],
        "image_manifest": manifest,
        "seo": project.seo.model_dump(mode="json", by_alias=True, exclude_none=True) if project.seo else None,
    }
