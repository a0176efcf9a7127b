from __future__ import annotations

import logging

from govscout.models import Agency
from govscout.store import RecordStore

log = logging.getLogger(__name__)

MAX_ABBREVIATION = 10


def generate_abbreviation(name: str | None) -> str:
    """Upper-cased initials of each whitespace-separated word, at most 10 chars.

    >>> generate_abbreviation("Department of Defense")
    'DOD'
    """
    if not name:
        return ""
    initials = "".join(word[0] for word in name.split())
    return initials.upper()[:MAX_ABBREVIATION]


class AgencyResolver:
    """Find-or-create agencies from free-text department names.

    Matching is a case-insensitive substring search over existing agency
    names. When several agencies match, an exact (case-insensitive) name match
    wins, otherwise the oldest agency (lowest id) does.
    """

    def __init__(self, store: RecordStore):
        self.store = store
        self._cache: dict[str, Agency] = {}
        self.created = 0

    def resolve(self, department_name: str | None, tier_hint: str | None = None) -> Agency | None:
        name = (department_name or "").strip()
        if not name:
            return None

        key = name.casefold()
        if key in self._cache:
            return self._cache[key]

        matches = self.store.find_agencies_by_name(name)
        if matches:
            exact = [a for a in matches if a.name.strip().casefold() == key]
            agency = (exact or matches)[0]
            if len(matches) > 1:
                log.debug("%d agencies match %r, using %r", len(matches), name, agency.name)
        else:
            agency = self.store.add_agency(Agency(
                name=name,
                abbreviation=generate_abbreviation(name),
                department=name,
                tier=tier_hint,
                is_active=True,
            ))
            self.created += 1
            log.info("Created agency %s (%s)", agency.name, agency.abbreviation)

        self._cache[key] = agency
        return agency
