"""
Unit test fixtures
"""

import asyncio
import itertools
import pytest
import sys
from pathlib import Path

# Add backend to path for imports
backend_dir = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_dir))

from core.config import CrawlConfig  # noqa: E402
from crawler.client import BrowserLaunchError, RateLimiter  # noqa: E402

CATALOG = "https://www.coursicle.com/temple/courses"

SAMPLE_COURSE_TEXT = """CIS 2168 - Data Structures
Credits
4
Description
Continuation of CIS 1068. Covers lists, stacks, queues,
trees and hash tables.
Usually Held
MWF (8:30am-9:50am), TR (10:00am-11:20am)
Recent Professors
James Howes, Andrew Rosen
Recent Semesters
Spring 2026, Fall 2025
Attributes
Quantitative Literacy, Writing Intensive
"""


@pytest.fixture
def sample_course_text():
    """Rendered text of a typical course page"""
    return SAMPLE_COURSE_TEXT


@pytest.fixture
def crawl_config():
    """Config with no delays so tests never sleep"""
    return CrawlConfig(delay_ms=0, unit_timeout_seconds=5.0)


@pytest.fixture
def instant_limiter():
    return RateLimiter(0)


# In-memory Firestore

class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, collection, doc_id):
        self._collection = collection
        self.id = doc_id

    def get(self):
        return FakeSnapshot(self, self._collection.docs.get(self.id))

    def set(self, data, merge=False):
        if merge and self.id in self._collection.docs:
            self._collection.docs[self.id].update(data)
        else:
            self._collection.docs[self.id] = dict(data)

    def update(self, data):
        if self.id not in self._collection.docs:
            raise KeyError(f"No document to update: {self.id}")
        self._collection.docs[self.id].update(data)

    def delete(self):
        self._collection.docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, collection, filters=(), limit=None):
        self._collection = collection
        self._filters = filters
        self._limit = limit

    def where(self, field, op, value):
        assert op == "==", f"Unsupported operator {op}"
        return FakeQuery(self._collection, self._filters + ((field, value),), self._limit)

    def limit(self, count):
        return FakeQuery(self._collection, self._filters, count)

    def stream(self):
        results = []
        for doc_id, data in list(self._collection.docs.items()):
            if all(data.get(f) == v for f, v in self._filters):
                results.append(FakeSnapshot(FakeDocument(self._collection, doc_id), dict(data)))
            if self._limit is not None and len(results) >= self._limit:
                break
        return iter(results)


class FakeCollection(FakeQuery):
    _ids = itertools.count(1)

    def __init__(self, name):
        self.name = name
        self.docs = {}
        super().__init__(self)

    def document(self, doc_id=None):
        if doc_id is None:
            doc_id = f"{self.name}-{next(self._ids)}"
        return FakeDocument(self, doc_id)


class FakeBatch:
    def __init__(self, db):
        self._db = db
        self._ops = []

    def set(self, ref, data, merge=False):
        self._ops.append(lambda: ref.set(data, merge=merge))

    def update(self, ref, data):
        self._ops.append(lambda: ref.update(data))

    def delete(self, ref):
        self._ops.append(ref.delete)

    def commit(self):
        if self._db.fail_commits:
            raise RuntimeError("commit rejected")
        for op in self._ops:
            op()
        self._db.commits += 1
        self._ops = []


class FakeFirestore:
    """Just enough of the Firestore client API for the persistence layer"""

    def __init__(self):
        self.collections = {}
        self.commits = 0
        self.fail_commits = False

    def collection(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def batch(self):
        return FakeBatch(self)

    def count(self, name):
        return len(self.collection(name).docs)


@pytest.fixture
def fake_db():
    return FakeFirestore()


# Fake browser

class FakeSession:
    """
    Stands in for BrowserSession.

    pages maps URL -> dict(texts=[...], heading=str, links=[...]) or an
    exception instance raised on navigation. Successive text() calls walk
    through texts and stay on the last one.
    """

    def __init__(self, pages, hang=None):
        self.pages = pages
        self.hang = hang or set()
        self.visited = []
        self.current = None
        self.closed = False
        self._reads = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def navigate(self, url, wait_until="load", timeout_ms=30000):
        self.visited.append(url)
        if url in self.hang:
            await asyncio.sleep(60)
        page = self.pages.get(url)
        if isinstance(page, Exception):
            raise page
        self.current = page or {"texts": [""], "heading": "", "links": []}
        self._reads = 0

    async def text(self):
        if self.current.get("read_error"):
            raise self.current["read_error"]
        texts = self.current["texts"]
        text = texts[min(self._reads, len(texts) - 1)]
        self._reads += 1
        return text

    async def heading(self):
        return self.current.get("heading", "")

    async def links(self):
        return list(self.current.get("links", []))

    async def evaluate(self, script, arg=None):
        return None

    async def simulate_human(self):
        pass

    async def settle(self, timeout_ms=10000):
        pass

    async def close(self):
        self.closed = True


class FakeClient:
    """Stands in for BrowserClient; records every session it opens"""

    def __init__(self, pages, hang=None, fail_launch=False, session_errors=None):
        self.pages = pages
        self.hang = hang
        self.fail_launch = fail_launch
        # 1-based open_session() call number -> exception raised by that call
        self.session_errors = session_errors or {}
        self.open_calls = 0
        self.sessions = []
        self.entered = False
        self.exited = False

    async def __aenter__(self):
        if self.fail_launch:
            raise BrowserLaunchError("Failed to launch browser: no executable")
        self.entered = True
        return self

    async def __aexit__(self, *args):
        self.exited = True

    async def open_session(self):
        self.open_calls += 1
        if self.open_calls in self.session_errors:
            raise self.session_errors[self.open_calls]
        session = FakeSession(self.pages, self.hang)
        self.sessions.append(session)
        return session


def page(text="", heading="", links=None, texts=None, read_error=None):
    """Build a FakeSession page entry; read_error is raised by text()"""
    return {"texts": texts or [text], "heading": heading, "links": links or [], "read_error": read_error}


@pytest.fixture
def catalog_pages():
    """A tiny catalog: two subjects, CIS with two courses, MATH with one"""
    return {
        f"{CATALOG}/": page(links=[
            f"{CATALOG}/CIS/",
            f"{CATALOG}/MATH/",
            f"{CATALOG}/CIS/",
            "https://www.coursicle.com/temple/",
        ]),
        f"{CATALOG}/CIS/": page(links=[
            f"{CATALOG}/CIS/0822/",
            f"{CATALOG}/CIS/2168/",
            f"{CATALOG}/CIS/2168/",
            f"{CATALOG}/MATH/1041/",
        ]),
        f"{CATALOG}/MATH/": page(links=[f"{CATALOG}/MATH/1041/"]),
        f"{CATALOG}/CIS/0822/": page(
            text="Credits\n3\nDescription\nIntro to computing.\n",
            heading="CIS 0822 - Computers and Society",
        ),
        f"{CATALOG}/CIS/2168/": page(text=SAMPLE_COURSE_TEXT, heading="CIS 2168 - Data Structures"),
        f"{CATALOG}/MATH/1041/": page(
            text="Credits\n4\nDescription\nLimits and derivatives.\nPrerequisites\nMATH 1021 (min grade C-)\n",
            heading="MATH 1041 - Calculus I",
        ),
    }


@pytest.fixture
def catalog_url():
    return CATALOG


@pytest.fixture
def make_page():
    return page


@pytest.fixture
def fake_client_cls():
    return FakeClient
