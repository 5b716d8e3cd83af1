"""
Field extraction heuristics for course detail pages.

Every pattern that depends on the catalog's page layout lives here, behind
extract_course_fields(). Each extractor works on the rendered page text,
returns an explicit default when its pattern is missing, and never raises,
so a layout change degrades a field instead of failing the course.

Page text looks like (as of 2026):

    CIS 2168 - Data Structures
    Credits
    4
    Description
    Continuation of CIS 1068. Covers lists, stacks, queues...
    Usually Held
    MWF (8:30am-9:50am), TR (10:00am-11:20am)
    Recent Professors
    James Howes, Andrew Rosen
    Recent Semesters
    Spring 2026, Fall 2025
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Iterable

from core.config import UniversityProfile
from core.logging import get_logger
from core.models import ScrapedSection

logger = get_logger(__name__)

DEFAULT_CREDITS = 3
MAX_PLACEHOLDER_SECTIONS = 3
TBA = "TBA"

HEADING_TITLE_PATTERN = re.compile(r'[A-Z]{2,4}\s*\d{3,4}\s*[-–—]\s*(.+)')
CREDITS_PATTERN = re.compile(r'\bCredits?\b[ \t]*:?[ \t]*\n?\s*(\d+(?:\.\d+)?)', re.I)
PREREQ_LABEL_PATTERN = re.compile(r'^[ \t]*Prerequisites?[ \t]*:?[ \t]*\n?[ \t]*([^\n]+)', re.I | re.M)
PREREQ_PHRASE_PATTERN = re.compile(
    r'(?:continuation\s+of|requires?|prerequisites?:?)\s+'
    r'([A-Z]{2,4}\s*\d{4}(?:\s*(?:,|and|or)\s*(?:(?:and|or)\s+)?[A-Z]{2,4}\s*\d{4})*)',
    re.I
)
PROFESSORS_PATTERN = re.compile(r'Recent\s*Professors?[ \t]*:?[ \t]*\n?[ \t]*([^\n]+)', re.I)
SEMESTERS_PATTERN = re.compile(r'Recent\s*Semesters?[ \t]*:?[ \t]*\n?[ \t]*([^\n]+)', re.I)
USUALLY_HELD_PATTERN = re.compile(r'Usually\s*Held[ \t]*:?[ \t]*\n?[ \t]*([^\n]+)', re.I)
TIME_TOKEN = r'\d{1,2}:\d{2}\s*[AaPp][Mm]'
TIME_SLOT_PATTERN = re.compile(
    rf'([MTWRFSU]+)\s*\(\s*({TIME_TOKEN})\s*[-–]\s*({TIME_TOKEN})\s*\)'
)
TIME_PATTERN = re.compile(r'^\s*(\d{1,2}):(\d{2})\s*([ap])\.?m\.?\s*$', re.I)

# Labels that end the description block
SECTION_LABELS = ("Usually Held", "Recent", "Prerequisites", "Prerequisite")

DAY_MAP = {
    'monday': 'M', 'mon': 'M', 'mo': 'M', 'm': 'M',
    'tuesday': 'T', 'tue': 'T', 'tu': 'T', 't': 'T',
    'wednesday': 'W', 'wed': 'W', 'we': 'W', 'w': 'W',
    'thursday': 'R', 'thu': 'R', 'th': 'R', 'r': 'R',
    'friday': 'F', 'fri': 'F', 'fr': 'F', 'f': 'F',
    'saturday': 'S', 'sat': 'S', 'sa': 'S', 's': 'S',
    'sunday': 'U', 'sun': 'U', 'su': 'U', 'u': 'U',
}
DAY_NAME_PATTERNS = [
    re.compile(r'Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday', re.I),
    re.compile(r'\b(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun)\b', re.I),
    re.compile(r'\b(?:Mo|Tu|We|Th|Fr|Sa|Su)\b', re.I),
]


@dataclass
class CourseFields:
    """Everything recoverable from one course page's text"""
    title: str
    credits: int = DEFAULT_CREDITS
    description: str = ""
    prerequisite_text: Optional[str] = None
    attributes: List[str] = field(default_factory=list)
    sections: List[ScrapedSection] = field(default_factory=list)


def extract_title(heading: Optional[str], subject: str, number: str) -> str:
    """Title from a heading like 'CIS 2168 - Data Structures'"""
    fallback = f"{subject} {number}"
    heading = (heading or "").strip()
    if not heading:
        return fallback

    match = HEADING_TITLE_PATTERN.search(heading)
    if match:
        title = match.group(1).strip()
    else:
        prefix = re.compile(rf'^{re.escape(subject)}\s*0*{re.escape(number.lstrip("0") or "0")}\s*[-–—:]?\s*', re.I)
        title = prefix.sub('', heading).strip()

    return title or fallback


def extract_credits(text: Optional[str]) -> int:
    """Integer after a 'Credits' label, 3 when missing or unparsable"""
    match = CREDITS_PATTERN.search(text or "")
    if not match:
        return DEFAULT_CREDITS
    try:
        return int(round(float(match.group(1))))
    except ValueError:
        return DEFAULT_CREDITS


def _label_lookahead(terms: Iterable[str]) -> str:
    words = list(SECTION_LABELS)
    for term in terms:
        first = term.split()[0] if term.split() else ""
        if first and first not in words:
            words.append(first)
    return '|'.join(re.escape(w) for w in words)


def extract_description(text: Optional[str], terms: Iterable[str] = ("Spring", "Fall")) -> str:
    """Text block after 'Description', stopping at the next section label"""
    stop = _label_lookahead(terms)
    pattern = re.compile(
        rf'Description[ \t]*:?[ \t]*\n\s*([^\n]+(?:\n(?!\s*(?:{stop}))[^\n]+)*)',
        re.I
    )
    match = pattern.search(text or "")
    if not match:
        return ""
    return re.sub(r'[ \t]+', ' ', match.group(1)).strip()


def extract_prerequisite_text(text: Optional[str], description: str = "") -> Optional[str]:
    """
    Raw prerequisite string.

    Prefers an explicit 'Prerequisites' label; otherwise looks for phrases like
    'continuation of CIS 1068' or 'requires MATH 1041 and CIS 1057' in the
    description.
    """
    match = PREREQ_LABEL_PATTERN.search(text or "")
    if match:
        candidate = match.group(1).strip()
        if candidate and 'NOTE:' not in candidate:
            return candidate

    if description:
        phrase = PREREQ_PHRASE_PATTERN.search(description)
        if phrase:
            return phrase.group(1).strip()

    return None


def extract_attributes(text: Optional[str], vocabulary: Dict[str, str]) -> List[str]:
    """Canonical names of every vocabulary attribute mentioned on the page"""
    found = []
    for name, pattern in vocabulary.items():
        if name not in found and re.search(pattern, text or "", re.I):
            found.append(name)
    return found


def parse_days(text: Optional[str]) -> List[str]:
    """Day codes from 'MWF', 'TR', 'Mon/Wed' or 'Tuesday, Thursday'"""
    text = (text or "").strip()
    if not text:
        return []

    compact = re.sub(r'[\s,/]+', '', text)
    if re.fullmatch(r'[MTWRFSU]+', compact):
        return list(dict.fromkeys(compact))

    for pattern in DAY_NAME_PATTERNS:
        matches = pattern.findall(text)
        if matches:
            return list(dict.fromkeys(DAY_MAP[m.lower()] for m in matches))

    return []


def parse_time(token: Optional[str], utc_offset: str = "-05:00") -> Optional[str]:
    """
    Convert '8:30am' to '08:30:00-05:00'.

    Returns None for anything that is not a valid 12-hour clock time.
    """
    match = TIME_PATTERN.match(token or "")
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2))
    if not 1 <= hours <= 12 or minutes > 59:
        return None

    meridiem = match.group(3).lower()
    if meridiem == 'p' and hours != 12:
        hours += 12
    elif meridiem == 'a' and hours == 12:
        hours = 0

    return f"{hours:02d}:{minutes:02d}:00{utc_offset}"


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if len(item.strip()) > 1]


def extract_sections(text: Optional[str], utc_offset: str = "-05:00") -> List[ScrapedSection]:
    """
    Synthesize sections from the 'Usually Held', 'Recent Professors' and
    'Recent Semesters' blocks.

    One section per time slot, taught by the first listed professor in the
    most recent term. Without time slots, up to three placeholder sections
    keep the instructor history.
    """
    text = text or ""

    prof_match = PROFESSORS_PATTERN.search(text)
    professors = _split_list(prof_match.group(1)) if prof_match else []

    term_match = SEMESTERS_PATTERN.search(text)
    terms = _split_list(term_match.group(1)) if term_match else []
    current_term = terms[:1]

    sections = []
    held_match = USUALLY_HELD_PATTERN.search(text)
    if held_match:
        for days, start, end in TIME_SLOT_PATTERN.findall(held_match.group(1)):
            sections.append(ScrapedSection(
                instructor=professors[0] if professors else TBA,
                days=parse_days(days),
                time_from=parse_time(start, utc_offset),
                time_to=parse_time(end, utc_offset),
                terms=list(current_term),
            ))

    if not sections and professors:
        zeroed = f"00:00:00{utc_offset}"
        for professor in professors[:MAX_PLACEHOLDER_SECTIONS]:
            sections.append(ScrapedSection(
                instructor=professor,
                days=[],
                time_from=zeroed,
                time_to=zeroed,
                terms=list(current_term),
            ))

    return sections


def extract_course_fields(
    page_text: Optional[str],
    heading: Optional[str],
    subject: str,
    number: str,
    profile: UniversityProfile
) -> CourseFields:
    """
    Extract every field of a course page.

    Args:
        page_text: document.body.innerText of the course page
        heading: text of the page's first <h1>
        subject: subject code, e.g. "CIS"
        number: course number as shown in the URL, e.g. "2168"
        profile: institution whose terms, attributes and UTC offset apply
    """
    text = page_text or ""
    description = extract_description(text, profile.terms)

    fields = CourseFields(
        title=extract_title(heading, subject, number),
        credits=extract_credits(text),
        description=description,
        prerequisite_text=extract_prerequisite_text(text, description),
        attributes=extract_attributes(text, profile.attributes),
        sections=extract_sections(text, profile.utc_offset),
    )

    if not description:
        logger.debug(f"No description found for {subject} {number}")
    return fields
