"""Person-name and profile parsing for professional-network search results."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final
from urllib.parse import unquote

_SEPARATOR = re.compile(r"\s+[-–—|]\s+|\s*\|\s*")
_PARENTHETICAL = re.compile(r"\s*\([^)]*\)")
_HONORIFIC = re.compile(r"^(?:dr|mr|ms|mrs|prof|professor)\.?\s+", re.IGNORECASE)
_SUFFIX = re.compile(r"\s+(?:jr|sr|ii|iii|iv|v)\.?$", re.IGNORECASE)
_AFTER_COMMA = re.compile(r"\s*,.*$")
_AFTER_CREDENTIAL_PERIOD = re.compile(r"\s*\.\s+[A-Z]{2,}.*$")
_CREDENTIAL = re.compile(r"^[A-Z]{2,5}$")
_FIRST_NAME_CHARS = re.compile(r"[^A-Za-zÀ-ɏ'\-]")
_LAST_NAME_CHARS = re.compile(r"[^A-Za-zÀ-ɏ'\- ]")
_PROFILE_ID = re.compile(r"linkedin\.com/in/([^/?#]+)", re.IGNORECASE)

NON_PROFILE_MARKERS: Final[tuple[str, ...]] = (
    "/pub/dir/",
    "linkedin.com/in/popular",
    "linkedin.com/in/directory",
)

CLARITY_CLEAN: Final = 1.0
CLARITY_CLEANED: Final = 0.85
CLARITY_COMPOUND: Final = 0.7
CLARITY_SINGLE: Final = 0.5


@dataclass(frozen=True)
class ParsedName:
    first_name: str
    last_name: str | None
    clarity: float

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}" if self.last_name else self.first_name


def is_individual_profile(url: str | None) -> bool:
    if not url:
        return False
    lowered = url.lower()
    if "linkedin.com/in/" not in lowered:
        return False
    return not any(marker in lowered for marker in NON_PROFILE_MARKERS)


def profile_id_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _PROFILE_ID.search(url)
    if not match:
        return None
    return unquote(match.group(1)).strip().lower() or None


def parse_profile_title(title: str | None) -> ParsedName | None:
    """Parse ``"Jane Doe - Partner - Acme"`` style titles into a name.

    Returns ``None`` when no usable first name remains. ``clarity`` drops when
    cleanup was needed, the last name is compound, or only one name is present.
    """
    if not title or not title.strip():
        return None
    segment = _SEPARATOR.split(title.strip(), maxsplit=1)[0].strip()
    if not segment:
        return None

    cleaned = _PARENTHETICAL.sub("", segment)
    cleaned = _HONORIFIC.sub("", cleaned.strip())
    cleaned = _SUFFIX.sub("", cleaned.strip())
    cleaned = _AFTER_COMMA.sub("", cleaned)
    cleaned = _AFTER_CREDENTIAL_PERIOD.sub("", cleaned)
    words = [word for word in cleaned.split() if not _CREDENTIAL.match(word.rstrip(",."))]
    needed_cleanup = words != segment.split()
    if not words:
        return None

    compound = False
    if len(words) == 1:
        first, last = words[0], ""
    elif len(words) == 2:
        first, last = words
    else:
        middle = words[1:-1]
        has_initials = any(
            len(part.rstrip(",.")) == 1 or part.endswith(".") or _CREDENTIAL.match(part.rstrip(",."))
            for part in middle
        )
        if not has_initials and len(words) == 3:
            first, last = words[0], " ".join(words[1:])
            compound = True
        else:
            first, last = words[0], words[-1]

    first = _FIRST_NAME_CHARS.sub("", first)
    last = re.sub(r"\s+", " ", _LAST_NAME_CHARS.sub("", last)).strip()
    if len(first) < 2:
        return None

    if not last:
        clarity = CLARITY_SINGLE
    elif compound:
        clarity = CLARITY_COMPOUND
    elif needed_cleanup:
        clarity = CLARITY_CLEANED
    else:
        clarity = CLARITY_CLEAN
    return ParsedName(first_name=first, last_name=last or None, clarity=clarity)
