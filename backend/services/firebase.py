"""
Firebase Service for Course Catalog Storage

Reconciles scraped courses with Firestore:
- universities: one document per institution, matched by name or alias
- courses: one document per (university, subject, number), updated in place
- sections: fully replaced for a course on every run

Prerequisite trees are stored flattened to a list of course codes, next to
the raw prerequisite text.
"""

from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

from core.config import UniversityProfile, get_firestore_client, initialize_firebase
from core.logging import get_logger
from core.models import ErrorKind, ScrapedCourse, ScrapedSection, ScrapeError
from .prerequisites import flatten_prerequisites

logger = get_logger(__name__)

MAX_BATCH_SIZE = 500  # Firestore limit


class PersistenceError(Exception):
    """The store rejected a write or a lookup"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FirebaseCourseService:
    """Service for managing scraped courses in Firebase Firestore."""

    def __init__(self, db=None):
        """Initialize the service, optionally with an explicit Firestore client."""
        self.db = db if db is not None else get_firestore_client()
        self.universities_collection = "universities"
        self.courses_collection = "courses"
        self.sections_collection = "sections"
        self.metadata_collection = "metadata"

    # Universities

    def find_university(self, profile: UniversityProfile) -> Optional[str]:
        """Id of the stored university whose name or aliases match the profile"""
        needles = {profile.name.lower(), profile.code.lower()} | {a.lower() for a in profile.aliases}
        short = profile.code.lower()

        for doc in self.db.collection(self.universities_collection).stream():
            data = doc.to_dict() or {}
            name = str(data.get("name", "")).lower()
            aliases = {str(a).lower() for a in data.get("aliases", [])}
            if short in name or aliases & needles:
                return doc.id
        return None

    def get_or_create_university(self, profile: UniversityProfile) -> str:
        """
        Find the institution or create it from its profile.

        Returns:
            The university document id

        Raises:
            PersistenceError: if the store cannot be read or written
        """
        try:
            existing = self.find_university(profile)
            if existing:
                logger.info(f"Found existing {profile.name}: {existing}")
                return existing

            doc_ref = self.db.collection(self.universities_collection).document()
            doc_ref.set({
                "name": profile.name,
                "code": profile.code,
                "aliases": list(profile.aliases),
                "terms": list(profile.terms),
                "timezone": profile.timezone,
                "majors": [],
                "attributes": list(profile.attributes),
                "created_at": _now(),
            })
        except Exception as e:
            raise PersistenceError(f"Failed to get or create {profile.name}: {e}") from e

        logger.info(f"Created {profile.name}: {doc_ref.id}")
        return doc_ref.id

    # Courses

    def _course_document(self, course: ScrapedCourse, university_id: str) -> Dict[str, Any]:
        flattened = flatten_prerequisites(course.prerequisites)
        return {
            "university": university_id,
            "subject": course.subject,
            "number": course.number,
            "course_code": course.course_code,
            "title": course.title,
            "credits": course.credits,
            "description": course.description,
            "attributes": list(course.attributes),
            "prerequisites": flattened or None,
            "prerequisite_text": course.prerequisite_text,
            "updated_at": _now(),
        }

    def find_course(self, university_id: str, subject: str, number: int):
        """Snapshot of the course with this natural key, or None"""
        query = (
            self.db.collection(self.courses_collection)
            .where("university", "==", university_id)
            .where("subject", "==", subject.upper())
            .where("number", "==", number)
            .limit(1)
        )
        for doc in query.stream():
            return doc
        return None

    def upsert_course(self, course: ScrapedCourse, university_id: str) -> Tuple[str, bool]:
        """
        Insert or update a course by (university, subject, number).

        Returns:
            (course_id, created)

        Raises:
            PersistenceError: if the store rejects the write
        """
        data = self._course_document(course, university_id)
        try:
            existing = self.find_course(university_id, course.subject, course.number)
            if existing is not None:
                existing.reference.update(data)
                return existing.id, False

            data["created_at"] = data["updated_at"]
            doc_ref = self.db.collection(self.courses_collection).document()
            doc_ref.set(data)
            return doc_ref.id, True
        except Exception as e:
            raise PersistenceError(f"Failed to upsert {course.course_code}: {e}") from e

    # Sections

    def _section_refs(self, course_id: str):
        query = self.db.collection(self.sections_collection).where("course_id", "==", course_id)
        return [doc.reference for doc in query.stream()]

    def _commit_in_batches(self, operations):
        """Apply (op, ref, data) tuples in Firestore-sized batches"""
        batch = self.db.batch()
        batch_count = 0

        for op, ref, data in operations:
            if op == "delete":
                batch.delete(ref)
            else:
                batch.set(ref, data)
            batch_count += 1

            if batch_count >= MAX_BATCH_SIZE:
                batch.commit()
                batch = self.db.batch()
                batch_count = 0

        if batch_count > 0:
            batch.commit()

    def replace_sections(self, course_id: str, sections: List[ScrapedSection]) -> int:
        """
        Delete every stored section of the course, then insert the fresh set.

        Returns:
            Number of sections inserted

        Raises:
            PersistenceError: if the store rejects the delete or the insert
        """
        try:
            stale = self._section_refs(course_id)
            if stale:
                self._commit_in_batches(("delete", ref, None) for ref in stale)

            collection = self.db.collection(self.sections_collection)
            inserts = []
            for section in sections:
                data = section.to_dict()
                data["course_id"] = course_id
                inserts.append(("set", collection.document(), data))
            self._commit_in_batches(inserts)
        except Exception as e:
            raise PersistenceError(f"Failed to replace sections of {course_id}: {e}") from e

        return len(sections)

    # Batch

    def store_courses(self, courses: List[ScrapedCourse], university_id: str) -> Dict[str, Any]:
        """
        Upsert every course and replace its sections.

        One failing course never stops the batch; each failure is logged and
        reported in stats["errors"] as a ScrapeError ("course" for the upsert,
        "section" for the section replacement).

        Returns:
            Dictionary with statistics about the operation
        """
        stats: Dict[str, Any] = {
            "total_courses": len(courses),
            "created": 0,
            "updated": 0,
            "sections": 0,
            "errors": [],
        }

        logger.info(f"Saving {len(courses)} courses to database...")

        for course in courses:
            try:
                course_id, created = self.upsert_course(course, university_id)
            except PersistenceError as e:
                logger.error(f"Error storing course {course.course_code}: {e}")
                stats["errors"].append(ScrapeError(
                    kind=ErrorKind.COURSE, message=str(e), subject=course.subject, number=course.number
                ))
                continue

            stats["created" if created else "updated"] += 1

            try:
                stats["sections"] += self.replace_sections(course_id, course.sections)
            except PersistenceError as e:
                logger.error(f"Error storing sections of {course.course_code}: {e}")
                stats["errors"].append(ScrapeError(
                    kind=ErrorKind.SECTION, message=str(e), subject=course.subject, number=course.number
                ))

        self._update_metadata(university_id, stats)
        return stats

    # Reads

    def get_courses(self, university_id: str, subject: Optional[str] = None) -> List[Dict[str, Any]]:
        """All stored courses of a university, ordered by subject and number"""
        query = self.db.collection(self.courses_collection).where("university", "==", university_id)
        if subject:
            query = query.where("subject", "==", subject.upper())

        courses = []
        for doc in query.stream():
            data = doc.to_dict()
            data["id"] = doc.id
            courses.append(data)

        courses.sort(key=lambda c: (c.get("subject", ""), c.get("number", 0)))
        return courses

    def get_course_by_code(self, university_id: str, subject: str, number: int) -> Optional[Dict[str, Any]]:
        doc = self.find_course(university_id, subject, number)
        if doc is None:
            return None
        data = doc.to_dict()
        data["id"] = doc.id
        return data

    def get_course_stats(self, university_id: str) -> Dict[str, Any]:
        """Course counts per subject and average credits"""
        by_subject: Dict[str, int] = {}
        total_credits = 0
        total = 0

        query = self.db.collection(self.courses_collection).where("university", "==", university_id)
        for doc in query.stream():
            data = doc.to_dict()
            subject = data.get("subject", "")
            by_subject[subject] = by_subject.get(subject, 0) + 1
            total_credits += data.get("credits") or 0
            total += 1

        return {
            "total_courses": total,
            "by_subject": dict(sorted(by_subject.items())),
            "avg_credits": total_credits / total if total else 0,
        }

    def get_all_subjects(self, university_id: str) -> List[str]:
        """Sorted subject codes with at least one stored course"""
        return sorted(self.get_course_stats(university_id)["by_subject"])

    def delete_all_courses(self, university_id: str) -> int:
        """
        Delete every course of a university along with its sections.

        Returns:
            Number of deleted courses
        """
        query = self.db.collection(self.courses_collection).where("university", "==", university_id)
        course_refs = [doc.reference for doc in query.stream()]

        operations = []
        for ref in course_refs:
            operations.extend(("delete", s, None) for s in self._section_refs(ref.id))
            operations.append(("delete", ref, None))
        self._commit_in_batches(operations)

        logger.warning(f"Deleted {len(course_refs)} courses of {university_id}")
        return len(course_refs)

    def _update_metadata(self, university_id: str, stats: Dict[str, Any]):
        """Record the outcome of the last store operation."""
        metadata_ref = self.db.collection(self.metadata_collection).document("last_update")
        metadata_ref.set({
            "university": university_id,
            "timestamp": _now(),
            "stats": {
                "total_courses": stats["total_courses"],
                "created": stats["created"],
                "updated": stats["updated"],
                "sections": stats["sections"],
                "errors": len(stats["errors"]),
            },
        })


def get_course_service() -> FirebaseCourseService:
    """Get an instance of the Firebase course service."""
    initialize_firebase()
    return FirebaseCourseService()
