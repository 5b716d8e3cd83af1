"""
Prerequisite Engine Service

Parses free-form prerequisite strings into an AND/OR requirement tree and
evaluates that tree against a student's completed and in-progress courses.

Examples of input formats:
- "CIS 1057"
- "CIS 1057 and MATH 1041"
- "CIS 1057 or CIS 1068"
- "(CIS 1057 or CIS 1068) and MATH 1041"
- "CIS 1057 (min grade C)"
- "CIS 1057 (may be taken concurrently)"

Parsing never raises. Text that cannot be parsed structurally falls back to
an implicit AND over every course code found in the string.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Iterable, Set, Tuple

from core.logging import get_logger

logger = get_logger(__name__)


# Patterns

COURSE_PATTERN = re.compile(r'\b([A-Z]{2,4})\s*(\d{4})\b')
LEAF_COURSE_PATTERN = re.compile(r'\b([A-Z]{2,4})\s*(\d{4})\b', re.I)
GRADE_PATTERN = re.compile(r'\(?(?:min(?:imum)?\s+)?grade\s*(?:of\s+)?([A-DF][+-]?)(?![A-Za-z])\)?', re.I)
CONCURRENT_PATTERN = re.compile(r'\(?(?:may\s+be\s+)?(?:taken\s+)?concurrent(?:ly)?\)?', re.I)
OR_PATTERN = re.compile(r'\s+or\s+', re.I)
AND_PATTERN = re.compile(r'\s+and\s+', re.I)


class PrerequisiteParseError(ValueError):
    """Raised internally when a prerequisite string has no valid structure"""


class ParseOutcome(Enum):
    """How a prerequisite string was turned into a tree"""
    EMPTY = "empty"
    PARSED = "parsed"
    FALLBACK = "fallback"


# Requirement Tree

class PrerequisiteNode:
    """Base class for prerequisite tree nodes"""

    type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass
class CourseNode(PrerequisiteNode):
    """A single course requirement"""
    course: str
    min_grade: Optional[str] = None
    concurrent: bool = False

    type = "course"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "course": self.course}
        if self.min_grade:
            data["minGrade"] = self.min_grade
        if self.concurrent:
            data["concurrent"] = True
        return data


@dataclass
class AndNode(PrerequisiteNode):
    """All children must be satisfied"""
    children: List[PrerequisiteNode] = field(default_factory=list)

    type = "AND"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "children": [c.to_dict() for c in self.children]}


@dataclass
class OrNode(PrerequisiteNode):
    """At least one child must be satisfied"""
    children: List[PrerequisiteNode] = field(default_factory=list)

    type = "OR"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "children": [c.to_dict() for c in self.children]}


def node_from_dict(data: Optional[Dict[str, Any]]) -> Optional[PrerequisiteNode]:
    """Rebuild a tree from its serialized form"""
    if not data:
        return None

    node_type = data.get("type")
    if node_type == "course":
        return CourseNode(
            course=data.get("course", ""),
            min_grade=data.get("minGrade"),
            concurrent=bool(data.get("concurrent", False))
        )

    children = [n for n in (node_from_dict(c) for c in data.get("children", [])) if n]
    if node_type == "AND":
        return AndNode(children)
    if node_type == "OR":
        return OrNode(children)
    return None


def _combine(node_cls, children: List[PrerequisiteNode]) -> Optional[PrerequisiteNode]:
    """Build an AND/OR node, collapsing the zero and one child cases"""
    if not children:
        return None
    if len(children) == 1:
        return children[0]
    return node_cls(children)


# Parsing

def normalize_course_code(code: str) -> str:
    """Uppercase and collapse whitespace: 'cis  1057' -> 'CIS 1057'"""
    return re.sub(r'\s+', ' ', code.strip().upper())


def is_balanced(text: str) -> bool:
    """Check that parentheses never close below depth zero and end at zero"""
    depth = 0
    for char in text:
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def split_at_top_level(text: str, pattern: re.Pattern) -> List[str]:
    """
    Split text wherever pattern matches outside of any parentheses.

    Raises:
        PrerequisiteParseError: if the parentheses are unbalanced
    """
    parts = []
    current = []
    depth = 0
    i = 0

    while i < len(text):
        char = text[i]
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
            if depth < 0:
                raise PrerequisiteParseError(f"Unbalanced ')' at position {i}")
        elif depth == 0:
            match = pattern.match(text, i)
            if match:
                part = ''.join(current).strip()
                if part:
                    parts.append(part)
                current = []
                i = match.end()
                continue
        current.append(char)
        i += 1

    if depth != 0:
        raise PrerequisiteParseError("Unbalanced '(' in expression")

    part = ''.join(current).strip()
    if part:
        parts.append(part)

    return parts


def _strip_outer_parens(text: str) -> str:
    if text.startswith('(') and text.endswith(')'):
        inner = text[1:-1]
        if is_balanced(inner):
            return inner.strip()
    return text


def parse_expression(text: str) -> Optional[PrerequisiteNode]:
    """
    Parse an AND/OR expression. OR binds loosest, AND next, parentheses
    override both.

    Raises:
        PrerequisiteParseError: on structurally invalid input
    """
    text = _strip_outer_parens(text.strip())
    if not text:
        return None

    for node_cls, pattern in ((OrNode, OR_PATTERN), (AndNode, AND_PATTERN)):
        parts = split_at_top_level(text, pattern)
        if len(parts) > 1:
            children = [n for n in (parse_expression(p) for p in parts) if n is not None]
            return _combine(node_cls, children)

    return parse_single_course(text)


def parse_single_course(text: str) -> Optional[CourseNode]:
    """
    Parse a leaf: a course code plus optional grade/concurrency modifiers.

    Raises:
        PrerequisiteParseError: if the leaf names more than one course
    """
    codes = []
    for m in LEAF_COURSE_PATTERN.finditer(text):
        code = f"{m.group(1).upper()} {m.group(2)}"
        if code not in codes:
            codes.append(code)

    if not codes:
        return None
    if len(codes) > 1:
        raise PrerequisiteParseError(f"Expected one course, found {', '.join(codes)}")

    node = CourseNode(course=codes[0])

    grade = GRADE_PATTERN.search(text)
    if grade:
        node.min_grade = grade.group(1).upper()

    if CONCURRENT_PATTERN.search(text):
        node.concurrent = True

    return node


def fallback_parse(text: str) -> Optional[PrerequisiteNode]:
    """Collect every course code in the text under an implicit AND"""
    courses = [
        CourseNode(course=f"{m.group(1)} {m.group(2)}")
        for m in COURSE_PATTERN.finditer(text or "")
    ]
    return _combine(AndNode, courses)


def parse_with_outcome(text: Optional[str]) -> Tuple[Optional[PrerequisiteNode], ParseOutcome]:
    """Parse prerequisites and report whether the fallback path was taken"""
    if text is None:
        return None, ParseOutcome.EMPTY

    cleaned = re.sub(r'\s+', ' ', str(text)).strip()
    if not cleaned or cleaned.lower() == 'none':
        return None, ParseOutcome.EMPTY

    try:
        return parse_expression(cleaned), ParseOutcome.PARSED
    except (PrerequisiteParseError, RecursionError) as e:
        logger.warning(f"Failed to parse prerequisites {cleaned!r}: {e}; using fallback")
        return fallback_parse(cleaned), ParseOutcome.FALLBACK


def parse_prerequisites(text: Optional[str]) -> Optional[PrerequisiteNode]:
    """
    Parse a prerequisite string into a PrerequisiteNode.

    Returns None for empty input, "none", or text with no course codes.
    Never raises.
    """
    node, _ = parse_with_outcome(text)
    return node


# Evaluation

def evaluate(node: PrerequisiteNode, completed: Set[str], in_progress: Set[str]) -> bool:
    """Evaluate a tree against already-normalized course code sets"""
    if isinstance(node, CourseNode):
        if not node.course:
            return True
        course = normalize_course_code(node.course)
        if node.concurrent:
            return course in completed or course in in_progress
        return course in completed

    if isinstance(node, AndNode):
        return all(evaluate(c, completed, in_progress) for c in node.children)

    if isinstance(node, OrNode):
        if not node.children:
            return True
        return any(evaluate(c, completed, in_progress) for c in node.children)

    logger.warning(f"Unknown prerequisite node type {type(node).__name__}; treating as satisfied")
    return True


def check_prerequisites(
    prerequisites: Optional[PrerequisiteNode],
    completed_courses: Iterable[str],
    in_progress_courses: Optional[Iterable[str]] = None
) -> bool:
    """
    Check whether a student satisfies a course's prerequisites.

    Args:
        prerequisites: Parsed requirement tree (None means no requirement)
        completed_courses: Course codes already completed
        in_progress_courses: Course codes currently being taken

    Returns:
        True if the requirement is satisfied
    """
    if prerequisites is None:
        return True

    completed = {normalize_course_code(c) for c in completed_courses}
    in_progress = {normalize_course_code(c) for c in (in_progress_courses or [])}

    return evaluate(prerequisites, completed, in_progress)


# Utilities

def flatten_prerequisites(node: Optional[PrerequisiteNode]) -> List[str]:
    """Deduplicated course codes of every leaf, in document order"""
    courses: List[str] = []

    def collect(n: PrerequisiteNode):
        if isinstance(n, CourseNode):
            if n.course and n.course not in courses:
                courses.append(n.course)
        else:
            for child in getattr(n, "children", []):
                collect(child)

    if node is not None:
        collect(node)
    return courses


def prerequisites_to_string(node: Optional[PrerequisiteNode]) -> str:
    """Render a tree as a parenthesized infix string"""
    if node is None:
        return "None"

    if isinstance(node, CourseNode):
        text = node.course
        if node.min_grade:
            text += f" (min grade {node.min_grade})"
        if node.concurrent:
            text += " (may be concurrent)"
        return text

    if isinstance(node, (AndNode, OrNode)):
        parts = [p for p in (prerequisites_to_string(c) for c in node.children) if p]
        if not parts:
            return ""
        if len(parts) == 1:
            return parts[0]
        joiner = " AND " if isinstance(node, AndNode) else " OR "
        return f"({joiner.join(parts)})"

    return ""


class PrerequisiteEngine:
    """
    Stateful front-end over the parser that counts how each string was handled.

    The counters make silent fallback recovery visible in ingestion reports.
    """

    def __init__(self):
        self.stats: Dict[str, int] = {outcome.value: 0 for outcome in ParseOutcome}
        self.fallback_samples: List[str] = []

    def parse(self, text: Optional[str]) -> Optional[PrerequisiteNode]:
        node, outcome = parse_with_outcome(text)
        self.stats[outcome.value] += 1
        if outcome is ParseOutcome.FALLBACK and len(self.fallback_samples) < 20:
            self.fallback_samples.append(str(text))
        return node

    def check(
        self,
        node: Optional[PrerequisiteNode],
        completed_courses: Iterable[str],
        in_progress_courses: Optional[Iterable[str]] = None
    ) -> bool:
        return check_prerequisites(node, completed_courses, in_progress_courses)

    def reset(self):
        self.stats = {outcome.value: 0 for outcome in ParseOutcome}
        self.fallback_samples = []
