"""
Record types shared by the crawler, the ingestion orchestrator and the
persistence layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from services.prerequisites import PrerequisiteNode


class ErrorKind(str, Enum):
    """Category of a per-item ingestion failure"""
    COURSE = "course"
    SECTION = "section"
    NETWORK = "network"
    PARSE = "parse"


@dataclass(frozen=True)
class CourseRef:
    """A course discovered on a subject listing page"""
    subject: str
    number: int
    number_str: str  # as it appears in URLs, leading zeros preserved

    @property
    def code(self) -> str:
        return f"{self.subject} {self.number_str}"


@dataclass
class CoursePage:
    """Rendered text of one course detail page"""
    ref: CourseRef
    url: str
    text: str
    heading: str = ""


@dataclass
class ScrapedSection:
    """One meeting pattern of a course"""
    instructor: str
    days: List[str] = field(default_factory=list)
    time_from: Optional[str] = None  # "08:30:00-05:00" or None
    time_to: Optional[str] = None
    terms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instructor": self.instructor or "TBA",
            "days": list(self.days),
            "time_from": self.time_from,
            "time_to": self.time_to,
            "terms": list(self.terms),
        }


@dataclass
class ScrapedCourse:
    """A fully assembled course record"""
    subject: str
    number: int
    title: str
    credits: int
    description: str = ""
    prerequisites: Optional["PrerequisiteNode"] = None
    prerequisite_text: Optional[str] = None
    attributes: List[str] = field(default_factory=list)
    sections: List[ScrapedSection] = field(default_factory=list)
    number_str: Optional[str] = None  # as listed, e.g. "0822"

    @property
    def course_code(self) -> str:
        """Code in the "SUBJ NNNN" form that prerequisite trees use"""
        number = self.number_str or f"{self.number:04d}"
        return f"{self.subject} {number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "number": self.number,
            "title": self.title,
            "credits": self.credits,
            "description": self.description,
            "prerequisites": self.prerequisites.to_dict() if self.prerequisites else None,
            "prerequisite_text": self.prerequisite_text,
            "attributes": list(self.attributes),
            "sections": [s.to_dict() for s in self.sections],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScrapeError:
    """Append-only log entry describing one failed unit of work"""
    kind: ErrorKind
    message: str
    subject: Optional[str] = None
    number: Optional[int] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "subject": self.subject,
            "number": self.number,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ScrapeResult:
    """Summary of one ingestion run"""
    success: bool
    courses_scraped: int = 0
    sections_scraped: int = 0
    errors: List[ScrapeError] = field(default_factory=list)
    duration_ms: int = 0
    prerequisite_stats: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "courses_scraped": self.courses_scraped,
            "sections_scraped": self.sections_scraped,
            "errors": [e.to_dict() for e in self.errors],
            "duration_ms": self.duration_ms,
            "prerequisite_stats": dict(self.prerequisite_stats),
        }
