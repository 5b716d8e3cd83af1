from .config import (
    CrawlConfig,
    UniversityProfile,
    TEMPLE,
    get_university_profile,
    get_firestore_client,
    initialize_firebase,
)
from .logging import setup_logging, get_logger
from .models import (
    CoursePage,
    CourseRef,
    ErrorKind,
    ScrapedCourse,
    ScrapedSection,
    ScrapeError,
    ScrapeResult,
)
from .parsers import CourseFields, extract_course_fields
