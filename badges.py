# =================================================================
#   Scout Troop Manager - Badge Level Rules
# =================================================================

import json

DEFAULT_LEVELS = [
    {'level': 1, 'label_key': 'badge_level_1'},
    {'level': 2, 'label_key': 'badge_level_2'},
    {'level': 3, 'label_key': 'badge_level_3'},
]

STAR_TYPES = ('proie', 'battue')


class BadgeLevelError(ValueError):
    """A requested badge level cannot be recorded."""


def _parse_levels(levels):
    if isinstance(levels, str):
        try:
            levels = json.loads(levels)
        except ValueError:
            return None
    return levels if isinstance(levels, list) else None


def normalize_levels(levels, level_count=None):
    parsed = _parse_levels(levels)
    if parsed:
        return parsed
    return DEFAULT_LEVELS[:level_count or len(DEFAULT_LEVELS)]


def get_level_count(levels, level_count=None):
    parsed = _parse_levels(levels)
    if parsed:
        return len(parsed)
    return level_count or len(DEFAULT_LEVELS)


def determine_next_level(existing_levels, level_count, requested_level=None):
    """
    Pick the level for a new badge progress entry.

    existing_levels: levels already recorded for this participant and badge.
    Raises BadgeLevelError for an invalid or duplicate requested level.
    Returns None when every level has been recorded.
    """
    used = set()
    for value in existing_levels:
        try:
            level = int(value)
        except (TypeError, ValueError):
            continue
        if level > 0:
            used.add(level)

    if requested_level:
        if requested_level < 1 or requested_level > level_count:
            raise BadgeLevelError('Invalid level for this badge template')
        if requested_level in used:
            raise BadgeLevelError('Level already recorded for this badge')
        return requested_level

    for level in range(1, level_count + 1):
        if level not in used:
            return level
    return None


def normalize_star_type(star_type):
    return star_type if star_type in STAR_TYPES else 'proie'


def section_matches(template_section, participant_section):
    """A template applies to every section when it is 'general'. Ungrouped participants are 'general'."""
    if not template_section:
        return True
    participant_section = participant_section or 'general'
    return template_section == 'general' or template_section == participant_section
