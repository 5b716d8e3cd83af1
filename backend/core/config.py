"""
Configuration for the Course Catalog Ingestion Backend

Loads crawl settings from the environment (.env supported), describes the
institutions we know how to crawl, and owns the Firestore client used by the
persistence layer.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, firestore
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

# Firebase configuration from environment variables
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
SERVICE_ACCOUNT_PATH = os.getenv("FIREBASE_SERVICE_ACCOUNT_PATH", "serviceAccountKey.json")

# Crawl defaults
CATALOG_BASE_URL = os.getenv("CATALOG_BASE_URL", "https://www.coursicle.com")
DEFAULT_UNIVERSITY_CODE = os.getenv("UNIVERSITY_CODE", "temple")
DEFAULT_DELAY_MS = 2000
DEFAULT_MAX_CONCURRENCY = 1
DEFAULT_NAVIGATION_TIMEOUT_MS = 30000
DEFAULT_LOAD_TIMEOUT_MS = 10000
DEFAULT_UNIT_TIMEOUT_SECONDS = 180.0


# Institution Profiles

@dataclass(frozen=True)
class UniversityProfile:
    """Everything the pipeline needs to know about one institution"""
    code: str  # catalog slug, e.g. "temple"
    name: str
    aliases: Tuple[str, ...]
    terms: Tuple[str, ...]
    timezone: str
    utc_offset: str  # fixed offset appended to section times, e.g. "-05:00"
    locale: str = "en-US"
    latitude: float = 0.0
    longitude: float = 0.0
    # canonical attribute name -> regex matched against page text
    attributes: Dict[str, str] = field(default_factory=dict)


TEMPLE = UniversityProfile(
    code="temple",
    name="Temple University",
    aliases=("Temple", "TU", "temple"),
    terms=("Fall", "Spring", "Summer I", "Summer II"),
    timezone="America/New_York",
    utc_offset="-05:00",
    locale="en-US",
    latitude=39.9812,
    longitude=-75.1553,
    attributes={
        "GenEd: Quantitative Literacy": r"Quantitative\s*(?:Reasoning|Literacy)",
        "GenEd: Science & Technology": r"Science\s*(?:&|and)\s*Technology",
        "GenEd: Race & Diversity": r"Race\s*(?:&|and)\s*Diversity",
        "GenEd: World Society": r"World\s*Society",
        "GenEd: Human Behavior": r"Human\s*Behavior",
        "GenEd: U.S. Society": r"\bU\.?\s*S\.?\s*Society",
        "GenEd: Arts": r"GenEd:?\s*Arts\b",
        "Writing Intensive": r"Writing[\s-]*Intensive",
    },
)

UNIVERSITY_PROFILES: Dict[str, UniversityProfile] = {
    TEMPLE.code: TEMPLE,
}


def get_university_profile(code: str) -> UniversityProfile:
    """Look up a profile by catalog code (case-insensitive)"""
    try:
        return UNIVERSITY_PROFILES[code.strip().lower()]
    except KeyError:
        known = ", ".join(sorted(UNIVERSITY_PROFILES))
        raise ValueError(f"Unknown university code '{code}' (known: {known})")


# Crawl Configuration

def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class CrawlConfig:
    """Settings for one ingestion run"""
    university_code: str = DEFAULT_UNIVERSITY_CODE
    subjects: Optional[List[str]] = None  # None means discover all subjects
    delay_ms: int = DEFAULT_DELAY_MS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    headless: bool = True
    manual_assist: bool = False
    navigation_timeout_ms: int = DEFAULT_NAVIGATION_TIMEOUT_MS
    load_timeout_ms: int = DEFAULT_LOAD_TIMEOUT_MS
    unit_timeout_seconds: float = DEFAULT_UNIT_TIMEOUT_SECONDS
    base_url: str = CATALOG_BASE_URL

    def __post_init__(self):
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {self.delay_ms}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.navigation_timeout_ms <= 0 or self.load_timeout_ms <= 0:
            raise ValueError("Timeouts must be positive")
        if self.subjects is not None:
            self.subjects = [s.strip().upper() for s in self.subjects if s.strip()] or None
        # Fail fast on an unknown institution
        get_university_profile(self.university_code)
        self.base_url = self.base_url.rstrip("/")

    @property
    def profile(self) -> UniversityProfile:
        return get_university_profile(self.university_code)

    @property
    def catalog_url(self) -> str:
        return f"{self.base_url}/{self.profile.code}/courses"

    @classmethod
    def from_env(cls, **overrides) -> "CrawlConfig":
        """Build a config from environment variables, with explicit overrides"""
        values = {
            "university_code": os.getenv("UNIVERSITY_CODE", DEFAULT_UNIVERSITY_CODE),
            "delay_ms": int(os.getenv("SCRAPE_DELAY_MS", str(DEFAULT_DELAY_MS))),
            "max_concurrency": int(os.getenv("MAX_CONCURRENT_PAGES", str(DEFAULT_MAX_CONCURRENCY))),
            "headless": _env_bool("SCRAPE_HEADLESS", True),
            "navigation_timeout_ms": int(os.getenv("NAVIGATION_TIMEOUT_MS", str(DEFAULT_NAVIGATION_TIMEOUT_MS))),
            "load_timeout_ms": int(os.getenv("LOAD_TIMEOUT_MS", str(DEFAULT_LOAD_TIMEOUT_MS))),
            "unit_timeout_seconds": float(os.getenv("UNIT_TIMEOUT_SECONDS", str(DEFAULT_UNIT_TIMEOUT_SECONDS))),
            "base_url": os.getenv("CATALOG_BASE_URL", CATALOG_BASE_URL),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# Firestore

# Global Firestore client
_db = None


def initialize_firebase():
    """
    Initialize Firebase Admin SDK and return the Firestore client.

    Uses a service account key when one is found next to the backend,
    otherwise application default credentials.
    """
    global _db

    if _db is not None:
        return _db

    backend_dir = Path(__file__).parent.parent
    possible_paths = [
        backend_dir / SERVICE_ACCOUNT_PATH,
        Path("backend") / SERVICE_ACCOUNT_PATH,
        Path(SERVICE_ACCOUNT_PATH)
    ]

    if not firebase_admin._apps:
        for path in possible_paths:
            if path.exists():
                cred = credentials.Certificate(str(path))
                firebase_admin.initialize_app(cred)
                break
        else:
            firebase_admin.initialize_app(options={'projectId': FIREBASE_PROJECT_ID})

    _db = firestore.client()
    return _db


def get_firestore_client():
    """Get the Firestore client instance."""
    global _db
    if _db is None:
        _db = initialize_firebase()
    return _db
