"""
User profile helpers.

Turns the ``preferences`` mapping of a user profile, optionally enriched with
engagement-weighted categories, into embedding input.
"""

from typing import Any, Dict, Mapping, Optional, Sequence

from opportunity_matcher.models.catalog import join_text_parts

# Profile preference attributes used as embedding input, in order.
PREFERENCE_TEXT_FIELDS = (
    "educationLevel",
    "careerInterests",
    "learningStyle",
    "timeAvailability",
    "currentSkills",
    "careerGoals",
    "preferredLocations",
    "industries",
    "workExperience",
    "personalityTraits",
)


def extract_preferences(profile: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not profile:
        return {}
    preferences = profile.get("preferences") or {}
    return dict(preferences) if isinstance(preferences, Mapping) else {}


def format_interests(interests: Mapping[str, float]) -> str:
    """Render weighted categories as ``"category (N interactions)"`` parts."""
    return " ".join(f"{category} ({weight:g} interactions)" for category, weight in interests.items())


def build_preference_text(
    preferences: Mapping[str, Any],
    interests: Optional[Mapping[str, float]] = None,
    search_terms: Optional[Sequence[str]] = None,
) -> str:
    """
    Build the preference embedding input.

    Args:
        preferences: The profile's ``preferences`` mapping
        interests: Top weighted categories from engagement, heaviest first
        search_terms: The user's most frequent search keywords

    Returns:
        Space-joined text; empty when the profile carries nothing usable
    """
    text = join_text_parts([preferences.get(name) for name in PREFERENCE_TEXT_FIELDS])
    if interests:
        text = join_text_parts([text, format_interests(interests)])
    if search_terms:
        text = join_text_parts([text, " ".join(search_terms)])
    return text
