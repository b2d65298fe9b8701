"""Collection specs for the school's stored entities."""

import re
from collections import defaultdict
from typing import Any
from urllib.parse import urlparse

from .engine import CollectionSpec

_ACADEMIC_YEAR = re.compile(r"^(\d{4})-(\d{4})$")
_HEX_COLOR = "^#[0-9a-fA-F]{6}$"


def _non_blank(*fields: str):
    """Rule: the given string fields must contain something besides spaces."""

    def rule(item: dict[str, Any]) -> str | None:
        blank = [f for f in fields if not str(item.get(f, "")).strip()]
        if blank:
            return f"{', '.join(blank)}: must not be blank"
        return None

    return rule


def academic_year_rule(item: dict[str, Any]) -> str | None:
    """Rule: 'year' reads like 2024-2025, second year one after the first."""
    match = _ACADEMIC_YEAR.match(item.get("year", ""))
    if not match or int(match.group(2)) != int(match.group(1)) + 1:
        return "year: must be an academic year such as 2024-2025"
    return None


def is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def buying_link_rule(item: dict[str, Any]) -> str | None:
    if not is_valid_url(item.get("buying_link", "")):
        return "buying_link: must be a valid http(s) URL"
    return None


YEARLY_BOOKS = CollectionSpec(
    key="yearly-books",
    schema={
        "type": "object",
        "properties": {
            "class": {"type": "integer", "minimum": 1, "maximum": 12},
            "year": {"type": "string"},
            "title": {"type": "string"},
            "author": {"type": "string"},
            "description": {"type": "string"},
            "buying_link": {"type": "string"},
        },
        "required": ["class", "year", "title", "author", "description", "buying_link"],
    },
    rules=[
        _non_blank("title", "author", "description"),
        academic_year_rule,
        buying_link_rule,
    ],
)

BRANDING_DEFAULTS: dict[str, Any] = {
    "schoolName": "Royal Academy",
    "tagline": "Excellence in Education",
    "logoUrl": "",
    "faviconUrl": "",
    "primaryColor": "#1e40af",
    "secondaryColor": "#f59e0b",
    "accentColor": "#10b981",
    "contactEmail": "info@royalacademy.edu",
    "contactPhone": "+1 (555) 123-4567",
    "address": "123 Education Street, Knowledge City, ED 12345",
}

BRANDING = CollectionSpec(
    key="royal-academy-branding",
    schema={
        "type": "object",
        "properties": {
            "schoolName": {"type": "string", "minLength": 1},
            "tagline": {"type": "string"},
            "logoUrl": {"type": "string"},
            "faviconUrl": {"type": "string"},
            "primaryColor": {"type": "string", "pattern": _HEX_COLOR},
            "secondaryColor": {"type": "string", "pattern": _HEX_COLOR},
            "accentColor": {"type": "string", "pattern": _HEX_COLOR},
            "contactEmail": {"type": "string", "pattern": r"^[^@\s]+@[^@\s]+\.[^@\s]+$"},
            "contactPhone": {"type": "string"},
            "address": {"type": "string"},
        },
        "required": ["schoolName"],
    },
    rules=[_non_blank("schoolName")],
    defaults=BRANDING_DEFAULTS,
)

TEACHERS = CollectionSpec(
    key="teachers",
    schema={
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "subject": {"type": "string"},
            "qualification": {"type": "string"},
            "experience": {"type": "string"},
            "email": {"type": "string"},
            "image": {"type": "string"},
        },
        "required": ["name", "subject"],
    },
    rules=[_non_blank("name", "subject")],
)

GALLERY = CollectionSpec(
    key="gallery",
    schema={
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "imageUrl": {"type": "string", "minLength": 1},
            "category": {"type": "string"},
            "description": {"type": "string"},
        },
        "required": ["title", "imageUrl"],
    },
    rules=[_non_blank("title")],
)

EXAM_ROUTINES = CollectionSpec(
    key="exam-routines",
    schema={
        "type": "object",
        "properties": {
            "class": {"type": "integer", "minimum": 1, "maximum": 12},
            "examName": {"type": "string"},
            "subjects": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "subject": {"type": "string"},
                        "date": {"type": "string"},
                        "time": {"type": "string"},
                    },
                    "required": ["subject", "date"],
                },
            },
        },
        "required": ["class", "examName", "subjects"],
    },
    rules=[_non_blank("examName")],
)

ANNOUNCEMENTS = CollectionSpec(
    key="announcements",
    schema={
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "content": {"type": "string"},
            "date": {"type": "string"},
            "priority": {"enum": ["low", "normal", "high"]},
        },
        "required": ["title", "content"],
    },
    rules=[_non_blank("title", "content")],
)

AUDIO_MESSAGES = CollectionSpec(
    key="audio-messages",
    schema={
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "audioUrl": {"type": "string", "minLength": 1},
            "audience": {"enum": ["all", "students", "parents", "teachers"]},
            "duration": {"type": "number", "minimum": 0},
        },
        "required": ["title", "audioUrl"],
    },
    rules=[_non_blank("title")],
)

BUILTIN_SPECS: dict[str, CollectionSpec] = {
    spec.key: spec
    for spec in (
        YEARLY_BOOKS,
        BRANDING,
        TEACHERS,
        GALLERY,
        EXAM_ROUTINES,
        ANNOUNCEMENTS,
        AUDIO_MESSAGES,
    )
}


def group_by_class(books: list[dict[str, Any]]) -> dict[int, list[dict[str, Any]]]:
    """Group books by class, classes in ascending order."""
    grouped: dict[int, list[dict[str, Any]]] = defaultdict(list)
    for book in books:
        grouped[book["class"]].append(book)
    return dict(sorted(grouped.items()))


def academic_years(books: list[dict[str, Any]]) -> list[str]:
    """Distinct academic years present, sorted."""
    return sorted({book["year"] for book in books})
