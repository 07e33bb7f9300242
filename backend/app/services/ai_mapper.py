"""
AI mapper - maps raw brochure content onto the StructuredProject schema.

Also produces the Hebrew marketing copy and SEO metadata for the listing.
All calls go through Gemini with JSON responses.
"""

import json
import logging
from typing import List, Dict, Any, Optional

from pydantic import ValidationError

from app.schemas.structured_project import (
    StructuredProject, Developer, Location, Amenity, Highlight, UnitType, SEOMetadata,
)
from app.services.gemini_client import GeminiClient

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 15000

MAPPING_WEIGHTS = {
    "name": 10,
    "location": 10,
    "developer": 15,
    "units": 20,
    "paymentPlan": 15,
    "priceFrom": 15,
    "amenities": 10,
    "completionDate": 5,
}

MAPPING_PROMPT = """You are an elite real estate marketing specialist creating premium property listings for Israeli investors in Dubai. Transform the raw PDF brochure content below into structured data for a bilingual (English + Hebrew) mini-site.

Extract ALL information thoroughly. Provide Hebrew for every text field that has an "He" variant.

Respond with a single JSON object:
{
  "name": "Project name in English",
  "nameHe": "Project name in Hebrew",
  "tagline": "English tagline", "taglineHe": "Hebrew tagline",
  "description": "2-3 English paragraphs", "descriptionHe": "3-5 Hebrew marketing paragraphs",
  "propertyType": "Residential|Commercial|Mixed-Use",
  "buildingType": "Tower|Villa|Townhouse|Low-Rise",
  "developer": {"name": "", "nameHe": "", "description": "", "established": "", "website": ""},
  "location": {
    "area": "Jumeirah Village Circle", "areaHe": "", "city": "Dubai", "country": "UAE",
    "coordinates": {"lat": 25.0, "lng": 55.2},
    "nearbyLandmarks": [{"name": "Dubai Mall", "nameHe": "", "distanceKm": 12, "type": "mall"}],
    "connectivity": [{"destination": "Dubai Airport", "destinationHe": "", "timeMinutes": 30}]
  },
  "priceFrom": 850000, "priceTo": 2500000, "priceCurrency": "AED",
  "units": [{"type": "1 Bedroom", "typeHe": "", "bedrooms": 1, "sizeFrom": 650, "sizeTo": 800, "sizeUnit": "sqft", "priceFrom": 1200000, "features": [], "featuresHe": []}],
  "paymentPlan": {"downPayment": 20, "duringConstruction": 50, "onHandover": 30, "postHandover": 0,
                  "milestones": [{"milestone": "On booking", "milestoneHe": "", "percentage": 20}]},
  "completionDate": "Q4 2026",
  "status": "off-plan|under-construction|ready",
  "specs": {"floors": 25, "totalUnits": 320, "parkingSpaces": 400},
  "investmentMetrics": {"expectedRoiPercent": 8, "rentalYieldPercent": 7},
  "amenities": [{"name": "Infinity Pool", "nameHe": "", "category": "wellness|leisure|convenience|security|outdoor|other"}],
  "highlights": [{"title": "Expected ROI", "titleHe": "", "value": "8%"}],
  "faq": [{"question": "", "questionHe": "", "answer": "", "answerHe": ""}]
}

Use numbers (not strings) for prices, sizes and percentages. Omit fields you cannot find; never invent prices."""

TRANSLATION_PROMPT = """You are an elite Hebrew translator and real estate marketing copywriter for Israeli investors.

Transform the content into compelling Hebrew marketing material:
1. nameHe: transliterate the project name to Hebrew
2. taglineHe: a short Hebrew tagline (max 10 words)
3. descriptionHe: 3-5 rich marketing paragraphs in Hebrew (lifestyle, investment benefits, architecture, location)
4. amenitiesHe: Hebrew translation for each amenity, same order
5. highlightsHe: [{"titleHe": "..."}] for each highlight, same order
6. faqHe: [{"questionHe": "...", "answerHe": "..."}] for each FAQ, same order

Respond with JSON: {"nameHe": "", "taglineHe": "", "descriptionHe": "", "amenitiesHe": [], "highlightsHe": [], "faqHe": []}"""

SEO_PROMPT = """Generate SEO metadata for a real estate project page targeting Israeli investors interested in Dubai properties.
Create a compelling title (max 60 chars), description (max 160 chars) and relevant keywords. The content should be in Hebrew.
Respond with JSON: {"title": "", "description": "", "keywords": []}"""


# ============================================================================
# HELPERS
# ============================================================================

def format_tables(tables: List[Dict[str, Any]]) -> str:
    rendered = []
    for index, table in enumerate(tables, start=1):
        lines = [" | ".join(table.get("headers", []))]
        lines += [" | ".join(row) for row in table.get("rows", [])]
        rendered.append(f"Table {index}:\n" + "\n".join(lines))
    return "\n\n".join(rendered)


def build_mapping_content(text: str, tables: List[Dict[str, Any]], metadata: Dict[str, Any]) -> str:
    truncated = text[:MAX_TEXT_CHARS]
    if len(text) > MAX_TEXT_CHARS:
        truncated += " ... [truncated]"

    return (
        f"DOCUMENT TEXT:\n{truncated}\n\n"
        f"EXTRACTED TABLES:\n{format_tables(tables) or 'No tables extracted'}\n\n"
        f"METADATA:\n{json.dumps(metadata, indent=2, default=str)}"
    )


def calculate_mapping_confidence(project: StructuredProject) -> float:
    """Weighted share (0-1) of the key listing fields that were filled in."""
    present = {
        "name": bool(project.name),
        "location": project.location is not None,
        "developer": bool(project.developer.name),
        "units": bool(project.units),
        "paymentPlan": project.payment_plan is not None,
        "priceFrom": bool(project.price_from),
        "amenities": bool(project.amenities),
        "completionDate": bool(project.completion_date),
    }
    score = sum(weight for field, weight in MAPPING_WEIGHTS.items() if present[field])
    return score / sum(MAPPING_WEIGHTS.values())


def _first(data: Dict[str, Any], *keys, default=""):
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return default


def extract_minimal_project(data: Dict[str, Any]) -> StructuredProject:
    """Salvage the essentials from a response that failed schema validation."""
    location = data.get("location") if isinstance(data.get("location"), dict) else {}
    developer = data.get("developer") if isinstance(data.get("developer"), dict) else {}

    project = StructuredProject(
        name=str(_first(data, "name", "projectName", "project_name", default="Unknown Project")),
        name_he=data.get("nameHe") if isinstance(data.get("nameHe"), str) else None,
        property_type=str(_first(data, "propertyType", "property_type", default="Residential")),
        description=str(_first(data, "description", "projectDescription", "overview", "about")) or None,
        developer=Developer(name=str(_first(developer, "name") or _first(data, "developerName", "developer_name"))),
        location=Location(
            area=str(_first(location, "area", "district", "neighborhood") or _first(data, "area", "district", default="Dubai")),
            city=str(location.get("city") or "Dubai"),
            country=str(location.get("country") or "UAE"),
        ),
    )

    amenities = []
    for raw in data.get("amenities") or data.get("facilities") or []:
        if isinstance(raw, str) and raw:
            amenities.append(Amenity(name=raw))
        elif isinstance(raw, dict) and _first(raw, "name", "title"):
            amenities.append(Amenity(name=str(_first(raw, "name", "title")), category=raw.get("category")))

    highlights = []
    for raw in data.get("highlights") or data.get("keyFeatures") or []:
        if isinstance(raw, dict) and _first(raw, "title", "name"):
            highlights.append(Highlight(title=str(_first(raw, "title", "name")), value=str(raw.get("value") or "")))
        elif isinstance(raw, str) and raw:
            highlights.append(Highlight(title=raw, value=""))

    units = []
    for raw in data.get("units") or data.get("unitTypes") or []:
        if isinstance(raw, dict) and _first(raw, "type", "unitType", "name"):
            try:
                units.append(UnitType.model_validate({**raw, "type": str(_first(raw, "type", "unitType", "name"))}))
            except ValidationError:
                continue

    return project.model_copy(update={"amenities": amenities, "highlights": highlights, "units": units})


# ============================================================================
# MAPPING
# ============================================================================

class AIMapper:
    """Gemini-backed mapping, translation and SEO for one pipeline run."""

    def __init__(self, client: Optional[GeminiClient] = None):
        self.client = client or GeminiClient()

    async def map_to_structured_project(
        self,
        text: str,
        tables: List[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Map brochure content to a StructuredProject.

        Returns ``{"success", "data", "confidence", "errors"}``. A response
        that fails validation is salvaged into a minimal project with 0.5
        confidence.
        """
        content = build_mapping_content(text, tables, metadata or {})

        try:
            raw = await self.client.generate_json([MAPPING_PROMPT, content])
        except Exception as e:
            logger.error(f"AI mapping error: {e}")
            return {"success": False, "data": None, "confidence": 0, "errors": [str(e)]}

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"success": False, "data": None, "confidence": 0, "errors": ["Invalid JSON response from AI"]}

        if not isinstance(parsed, dict):
            return {"success": False, "data": None, "confidence": 0, "errors": ["AI response is not a JSON object"]}

        try:
            project = StructuredProject.model_validate(parsed)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            logger.warning(f"AI mapper validation failed, using minimal project: {errors[:5]}")
            return {"success": True, "data": extract_minimal_project(parsed), "confidence": 0.5, "errors": errors}

        return {
            "success": True,
            "data": project,
            "confidence": calculate_mapping_confidence(project),
            "errors": [],
        }

    async def translate_to_hebrew(self, project: StructuredProject) -> Dict[str, Any]:
        """
        Hebrew fields to merge into the project (python field names).

        Skipped when the mapping already produced a full Hebrew description.
        Returns an empty dict on failure.
        """
        if project.description_he and len(project.description_he) > 100:
            return {
                "name_he": project.name_he,
                "tagline_he": project.tagline_he,
                "description_he": project.description_he,
            }

        payload = {
            "name": project.name,
            "tagline": project.tagline,
            "description": project.description,
            "amenities": [amenity.name for amenity in project.amenities[:20]],
            "highlights": [{"title": h.title, "value": h.value} for h in project.highlights[:10]],
            "faq": [{"question": f.question, "answer": f.answer} for f in project.faq[:5]],
        }

        try:
            translated = json.loads(
                await self.client.generate_json([TRANSLATION_PROMPT, json.dumps(payload, ensure_ascii=False)])
            )
        except Exception as e:
            logger.error(f"Translation error: {e}")
            return {}

        if not isinstance(translated, dict):
            return {}

        result: Dict[str, Any] = {
            key: translated[camel]
            for key, camel in (("name_he", "nameHe"), ("tagline_he", "taglineHe"), ("description_he", "descriptionHe"))
            if isinstance(translated.get(camel), str) and translated[camel]
        }

        amenities_he = translated.get("amenitiesHe") or []
        if amenities_he and project.amenities:
            result["amenities"] = [
                amenity.model_copy(update={
                    "name_he": (amenities_he[i] if i < len(amenities_he) and isinstance(amenities_he[i], str) else None)
                    or amenity.name_he or amenity.name
                })
                for i, amenity in enumerate(project.amenities)
            ]

        highlights_he = translated.get("highlightsHe") or []
        if highlights_he and project.highlights:
            result["highlights"] = [
                highlight.model_copy(update={
                    "title_he": _item(highlights_he, i, "titleHe") or highlight.title_he or highlight.title
                })
                for i, highlight in enumerate(project.highlights)
            ]

        faq_he = translated.get("faqHe") or []
        if faq_he and project.faq:
            result["faq"] = [
                item.model_copy(update={
                    "question_he": _item(faq_he, i, "questionHe") or item.question_he or item.question,
                    "answer_he": _item(faq_he, i, "answerHe") or item.answer_he or item.answer,
                })
                for i, item in enumerate(project.faq)
            ]

        return result

    async def generate_seo(self, project: StructuredProject) -> SEOMetadata:
        """Hebrew SEO title/description/keywords. Falls back to the project's own text."""
        fallback = SEOMetadata(
            title=project.name,
            description=(project.description or "")[:160],
            keywords=[],
        )

        details = (
            f"Project: {project.name}\n"
            f"Developer: {project.developer.name}\n"
            f"Location: {project.location.area}\n"
            f"Price from: {project.price_from} {project.price_currency}\n"
            f"Type: {project.property_type}"
        )

        try:
            parsed = json.loads(await self.client.generate_json([SEO_PROMPT, details]))
            return SEOMetadata.model_validate(parsed)
        except Exception as e:
            logger.error(f"SEO generation error: {e}")
            return fallback


def _item(items: List[Any], index: int, key: str) -> Optional[str]:
    if index < len(items) and isinstance(items[index], dict):
        value = items[index].get(key)
        return value if isinstance(value, str) and value else None
    return None
