"""
Course Catalog Population Script

Crawls the Coursicle catalog for an institution and stores it in Firebase.

Usage:
    python -m tasks.populate                        # Scrape all subjects
    python -m tasks.populate CIS MATH               # Scrape specific subjects
    python -m tasks.populate --dry-run CIS          # Preview without saving
    python -m tasks.populate --manual CIS           # Visible browser; solve bot checks by hand
    python -m tasks.populate --list-subjects        # Only list available subjects
"""

import asyncio
import argparse
import re
from datetime import datetime
from typing import List, Optional

from core.config import CrawlConfig
from core.logging import setup_logging
from services.ingestion import IngestionOrchestrator
from services.firebase import PersistenceError, get_course_service
from crawler.client import BrowserLaunchError

SUBJECT_ARG_PATTERN = re.compile(r'^[A-Z]{2,4}$', re.I)
SUBJECTS_PER_ROW = 10
MAX_ERRORS_SHOWN = 10
SAMPLE_COURSES = 5


async def wait_for_enter(url: str):
    """Block (off the event loop) until the operator presses ENTER"""
    print("\n" + "!" * 60)
    print(f"Bot check detected on {url}")
    print("Solve it in the browser window, then come back here.")
    print("!" * 60)
    loop = asyncio.get_event_loop()
    await loop.run_in_executor(None, input, "Press ENTER to continue...")


def print_subjects(subjects: List[str]):
    """Print subject codes in rows"""
    print(f"Found {len(subjects)} subjects:\n")
    for i in range(0, len(subjects), SUBJECTS_PER_ROW):
        row = subjects[i:i + SUBJECTS_PER_ROW]
        print("  " + "  ".join(s.ljust(4) for s in row))

    if subjects:
        print("\nTo scrape specific subjects, run:")
        print(f"   python -m tasks.populate {' '.join(subjects[:3])}")
        print("\nTo scrape all subjects, run:")
        print("   python -m tasks.populate")


async def list_subjects(config: CrawlConfig) -> List[str]:
    """Discover and print the catalog's subjects"""
    try:
        subjects = await IngestionOrchestrator(config).discover_subjects()
    except BrowserLaunchError as e:
        print(f"ERROR: {e}")
        return []

    if not subjects:
        print("No subjects found. The page structure may have changed.")
    else:
        print_subjects(subjects)
    return subjects


async def populate_database(config: CrawlConfig, dry_run: bool = False) -> bool:
    """
    Crawl the catalog and store it in Firebase.

    Args:
        config: Crawl configuration (subjects, delay, concurrency, mode)
        dry_run: If True, print what was scraped without writing anything

    Returns:
        True if the crawl ran (individual course failures are reported, not fatal)
    """
    profile = config.profile

    print("=" * 60)
    print(f"{profile.name} Course Catalog Population Script")
    print("=" * 60)
    print(f"Subjects: {', '.join(config.subjects) if config.subjects else 'ALL (this may take a while)'}")
    print(f"Delay: {config.delay_ms}ms | Concurrency: {config.max_concurrency}")
    print(f"Mode: {'manual-assist' if config.manual_assist else 'unattended'}"
          f"{' | DRY RUN' if dry_run else ''}")
    print(f"Started: {datetime.now()}")
    print("=" * 60)

    service = None
    university_id: Optional[str] = None
    if not dry_run:
        print("\n[1/3] Initializing Firebase...")
        try:
            service = get_course_service()
            university_id = service.get_or_create_university(profile)
            print(f"Using university: {profile.name} ({university_id})")
        except PersistenceError as e:
            print(f"ERROR: Failed to initialize Firebase: {e}")
            print("\nMake sure you have:")
            print("1. Downloaded your service account key from Firebase Console")
            print("2. Saved it as 'serviceAccountKey.json' in the backend folder")
            return False
    else:
        print("\n[1/3] DRY RUN - skipping Firebase")

    print("\n[2/3] Scraping courses...")
    operator = wait_for_enter if config.manual_assist else None
    courses, result = await IngestionOrchestrator(config, operator=operator).run()

    if not result.success:
        print(f"ERROR: Scrape failed: {result.errors[0].message if result.errors else 'unknown error'}")
        return False

    print("\n" + "=" * 60)
    print("SCRAPE RESULTS")
    print("=" * 60)
    print(f"Total courses found: {len(courses)}")
    print(f"Sections: {result.sections_scraped}")
    print(f"Duration: {result.duration_ms / 1000:.1f} seconds")
    print(f"Errors: {len(result.errors)}")
    print(f"Prerequisites: {result.prerequisite_stats}")

    if result.errors:
        print("\nErrors encountered:")
        for err in result.errors[:MAX_ERRORS_SHOWN]:
            print(f"  - {err.kind.value}: {err.message}")
        if len(result.errors) > MAX_ERRORS_SHOWN:
            print(f"  ... and {len(result.errors) - MAX_ERRORS_SHOWN} more")

    if courses:
        print("\nSample courses scraped:")
        for course in courses[:SAMPLE_COURSES]:
            print(f"  {course.course_code}: {course.title} ({course.credits} cr)")
            if course.prerequisite_text:
                print(f"     Prerequisites: {course.prerequisite_text}")
        if len(courses) > SAMPLE_COURSES:
            print(f"  ... and {len(courses) - SAMPLE_COURSES} more courses")

    if dry_run:
        print("\n[3/3] DRY RUN - skipped database save")
        return True

    if not courses:
        print("\n[3/3] Nothing to store")
        return True

    print("\n[3/3] Storing courses in Firebase...")
    stats = service.store_courses(courses, university_id)

    print("\n" + "=" * 60)
    print("POPULATION COMPLETE")
    print("=" * 60)
    print(f"Total Courses: {stats['total_courses']}")
    print(f"Created: {stats['created']}")
    print(f"Updated: {stats['updated']}")
    print(f"Sections: {stats['sections']}")
    print(f"Errors: {len(stats['errors'])}")
    print(f"Completed: {datetime.now()}")
    print("=" * 60)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Populate Firebase with course catalog data scraped from Coursicle"
    )
    parser.add_argument(
        "subjects",
        nargs="*",
        help="Subject codes to scrape (e.g., CIS MATH). Defaults to all subjects."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Scrape and print results without saving to the database"
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Open a visible browser and pause for a human when a bot check appears"
    )
    parser.add_argument(
        "--list-subjects",
        action="store_true",
        help="Only list available subjects"
    )
    parser.add_argument(
        "--delay-ms",
        type=int,
        default=None,
        help="Base delay between page loads in milliseconds"
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Number of pages scraped in parallel"
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level (DEBUG, INFO, WARNING, ERROR)"
    )
    return parser


def config_from_args(args: argparse.Namespace) -> CrawlConfig:
    invalid = [s for s in args.subjects if not SUBJECT_ARG_PATTERN.match(s)]
    if invalid:
        raise ValueError(f"Invalid subject code(s): {', '.join(invalid)}")

    # None keeps SCRAPE_HEADLESS from the environment
    headless = False if (args.headed or args.manual) else None
    return CrawlConfig.from_env(
        subjects=args.subjects or None,
        delay_ms=args.delay_ms,
        max_concurrency=args.max_concurrency,
        headless=headless,
        manual_assist=args.manual,
    )


def main():
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    if args.list_subjects:
        subjects = asyncio.run(list_subjects(config))
        raise SystemExit(0 if subjects else 1)

    if args.manual and not config.subjects:
        parser.error("--manual needs at least one subject code")

    ok = asyncio.run(populate_database(config, dry_run=args.dry_run))
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
