import logging
from pathlib import Path

import pytest

import doc_consolidator


class FakeSession:
    """Stands in for BrowserSession: serves canned pages and writes a stub PDF."""

    def __init__(self, pages=None, failing=(), emit_error=None):
        self.pages = pages or {}
        self.failing = set(failing)
        self.emit_error = emit_error
        self.fetched = []
        self.emitted = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetch_page(self, url):
        self.fetched.append(url)
        if url in self.failing:
            raise RuntimeError(f"navigation failed: {url}")
        return self.pages[url]

    def emit_pdf(self, body, stylesheet, output_path, page_options):
        if self.emit_error is not None:
            raise self.emit_error
        self.emitted.append({
            "body": body,
            "stylesheet": stylesheet,
            "output_path": str(output_path),
            "page_options": page_options,
        })
        Path(output_path).write_bytes(b"%PDF-1.4\n% stub\n")


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def fake_browser(monkeypatch):
    """Replaces BrowserSession so CLI/API runs never launch Chromium."""
    session = FakeSession()
    monkeypatch.setattr(doc_consolidator, "BrowserSession", lambda: session)
    return session


@pytest.fixture
def docs_tree(tmp_path):
    """a.mdx links to b/c.mdx; b/d.mdx references a missing image."""
    root = tmp_path / "docs"
    (root / "b").mkdir(parents=True)
    (root / "a.mdx").write_text("# A\n\nSee [C](b/c.mdx).\n", encoding="utf-8")
    (root / "b" / "c.mdx").write_text("# C\n\n## Setup\n\nBack to [A](../a.mdx).\n", encoding="utf-8")
    (root / "b" / "d.mdx").write_text("# D\n\n![diagram](images/missing.png)\n", encoding="utf-8")
    return root


SEED_URL = "https://docs.example.com/docs/"

SEED_HTML = """<html><head><title>Docs</title></head><body>
<nav>
  <a href="/docs/intro">Intro</a>
  <a href="https://docs.example.com/docs/api#auth">API</a>
  <a href="/blog/announcement">Blog</a>
  <a href="https://other.example.org/docs/x">Elsewhere</a>
  <a href="/docs/intro#again">Intro again</a>
  <a href="mailto:docs@example.com">Mail</a>
  <a href="#top">Top</a>
</nav>
<h1 id="welcome">Welcome</h1>
<script>console.log("hydrate")</script>
</body></html>"""

INTRO_HTML = """<html><body>
<h1 id="intro">Intro</h1>
<p>Read the <a href="/docs/api#auth">auth guide</a> or jump to <a href="#details">details</a>.</p>
<img src="img/diagram.png" alt="diagram">
<h2 id="details">Details</h2>
</body></html>"""

API_HTML = """<html><body>
<h1 id="api">API</h1>
<h2 id="auth">Auth</h2>
<p>See <a href="https://other.example.org/oauth">OAuth</a>.</p>
</body></html>"""


@pytest.fixture
def site_pages():
    return {
        SEED_URL: SEED_HTML,
        "https://docs.example.com/docs/intro": INTRO_HTML,
        "https://docs.example.com/docs/api": API_HTML,
    }


@pytest.fixture
def seed_url():
    return SEED_URL
