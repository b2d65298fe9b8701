"""Data-driven records stored through the sync facade.

One engine serves every entity (books, branding, teachers, gallery, exam
routines, announcements, audio messages); each entity is just a spec.
"""

from .engine import (
    Collection,
    CollectionSpec,
    SingletonDocument,
    ValidationError,
    validate_item,
)
from .specs import (
    ANNOUNCEMENTS,
    AUDIO_MESSAGES,
    BRANDING,
    BUILTIN_SPECS,
    EXAM_ROUTINES,
    GALLERY,
    TEACHERS,
    YEARLY_BOOKS,
    academic_years,
    group_by_class,
)

__all__ = [
    "ANNOUNCEMENTS",
    "AUDIO_MESSAGES",
    "BRANDING",
    "BUILTIN_SPECS",
    "Collection",
    "CollectionSpec",
    "EXAM_ROUTINES",
    "GALLERY",
    "SingletonDocument",
    "TEACHERS",
    "ValidationError",
    "YEARLY_BOOKS",
    "academic_years",
    "group_by_class",
    "validate_item",
]
