# --- Standard Libraries ---
import argparse
import base64
import datetime
import html
import logging
import os
import posixpath
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib import robotparser
from urllib.parse import quote, unquote, urljoin, urlparse, urlunparse

# --- Dependencies need installation ---
# CORE: pip install requests beautifulsoup4 markdown
# BROWSER: pip install playwright
#   + Playwright browsers: run `playwright install chromium` in terminal after pip install
import markdown
import requests
from bs4 import BeautifulSoup
from playwright.sync_api import sync_playwright


# --- Configuration ---
USER_AGENT = 'DocConsolidator/1.0 (+https://github.com/doc-consolidator/doc-consolidator)'
REQUEST_TIMEOUT_SECONDS = 25 # Timeout for robots.txt requests
PAGE_LOAD_TIMEOUT_SECONDS = 60 # Timeout for browser navigation / set_content
PAGE_WAIT_UNTIL = 'networkidle' # Renderer signal that page content is stable
VIEWPORT = {'width': 1200, 'height': 800}
BASE_OUTPUT_DIR = "consolidated_docs"

TARGET_EXTENSION = '.mdx'
OUTPUT_FILENAME = 'output.pdf'
RESPECT_ROBOTS_TXT = True

SECTION_ANCHOR_PREFIX = 'unit'

# Extensions passed to Python-Markdown. 'toc' gives headings ids so deep links survive merging.
MARKDOWN_EXTENSIONS = ['extra', 'toc', 'sane_lists']

# Hrefs that never name a page during crawl enumeration
IGNORED_HREF_PREFIXES = ('#', 'mailto:', 'tel:', 'javascript:', 'data:')

IMAGE_MIME_TYPES = {'.svg': 'image/svg+xml', '.png': 'image/png'}
DEFAULT_IMAGE_MIME_TYPE = 'image/jpeg'


@dataclass(frozen=True)
class PageOptions:
    """Paper format and margins handed to the PDF back end."""
    format: str = 'A4'
    margins: tuple = ('20mm', '20mm', '20mm', '20mm') # top, right, bottom, left
    print_background: bool = True

    def to_playwright(self):
        top, right, bottom, left = self.margins
        return {
            'format': self.format,
            'print_background': self.print_background,
            'margin': {'top': top, 'right': right, 'bottom': bottom, 'left': left},
        }


FILE_MODE_PAGE_OPTIONS = PageOptions(margins=('20mm', '20mm', '20mm', '20mm'))
CRAWL_MODE_PAGE_OPTIONS = PageOptions(margins=('2cm', '2cm', '2cm', '2cm'))

TOC_STYLES = """
      .toc { page-break-after: always; }
      .toc ul { list-style: none; padding-left: 0; }
      .toc li { margin: 4px 0; }
      .toc a { color: #1a4f8b; text-decoration: none; }
"""

FILE_MODE_STYLESHEET = """
      body {
        font-family: 'SF Mono', Menlo, monospace;
        line-height: 1.6;
        padding: 20px;
        font-size: 14px;
      }
      .unit-content {
        background: #f8f8f8;
        padding: 20px;
        border-radius: 5px;
        border: 1px solid #ddd;
      }
      .file-path {
        color: #666;
        font-size: 0.9em;
        margin-bottom: 10px;
      }
      h1.unit-title {
        page-break-before: always;
        font-size: 24px;
        margin-bottom: 20px;
      }
      code {
        background: #f0f0f0;
        padding: 2px 4px;
        border-radius: 3px;
      }
      pre {
        background: #f4f4f4;
        padding: 15px;
        border-radius: 5px;
        white-space: pre-wrap;
      }
      img { max-width: 100%; height: auto; }
""" + TOC_STYLES

CRAWL_MODE_STYLESHEET = """
      body { font-family: Arial, sans-serif; }
      .page-break { page-break-after: always; }
      h1.unit-title { font-size: 22px; border-bottom: 1px solid #ddd; }
      img { max-width: 100%; height: auto; }
""" + TOC_STYLES


# --- Errors ---

class ConsolidationError(Exception):
    """Base class for conditions that abort a consolidation run."""


class InvalidSourceError(ConsolidationError):
    """The root path or seed URL is unusable."""


class NoContentFound(ConsolidationError):
    """Enumeration produced zero units."""


class AllUnitsFailed(ConsolidationError):
    """Every enumerated unit failed to render; there is nothing to assemble."""


class EmissionError(ConsolidationError):
    """The PDF back end failed to write the artifact."""


# --- Data Model ---

@dataclass(frozen=True)
class Unit:
    """One content item (a file or a crawled page) merged into the artifact."""
    identity: str
    ordinal: int
    display_label: str
    kind: str = 'file' # 'file' or 'page'
    source_path: Path = None

    @property
    def section_anchor(self):
        return f"{SECTION_ANCHOR_PREFIX}-{self.ordinal}"


@dataclass
class Reference:
    """A link or embedded resource found in a unit's raw content, plus what became of it."""
    kind: str # 'cross_unit', 'fragment', 'image', 'external'
    raw_target: str
    resolved_target: str
    outcome: str # 'rewritten', 'inlined', 'unchanged', 'warned'
    target_identity: str = None # set when a link was rewritten to another unit's anchor


@dataclass
class ResolvedContent:
    content: str
    references: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


@dataclass
class SectionSlot:
    identity: str
    status: str = 'pending' # 'pending', 'rendered', 'failed'
    markup: str = None
    error: str = None


@dataclass
class ConsolidationResult:
    """Run-wide record of rendered sections, warnings and failed units."""
    rendered_sections: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    failed_units: list = field(default_factory=list)
    cross_links: list = field(default_factory=list) # (source identity, Reference)
    output_path: str = None

    def allocate(self, units):
        """Creates one pending slot per enumerated unit."""
        self.rendered_sections = [SectionSlot(identity=unit.identity) for unit in units]

    def add_warning(self, message):
        logging.debug(message)
        self.warnings.append(message)

    def record_links(self, unit, references):
        for reference in references:
            if reference.target_identity is not None:
                self.cross_links.append((unit.identity, reference))

    def record_rendered(self, unit, markup):
        slot = self.rendered_sections[unit.ordinal]
        slot.status = 'rendered'
        slot.markup = markup

    def record_failure(self, unit, error):
        slot = self.rendered_sections[unit.ordinal]
        slot.status = 'failed'
        slot.error = str(error)
        if unit.identity not in self.failed_units:
            self.failed_units.append(unit.identity)
        self.warnings.append(f"Failed to render {unit.identity}: {error}")

    def flag_dangling_links(self):
        """Warns about rewritten links from rendered units into units whose section was never produced."""
        failed = set(self.failed_units)
        for source, reference in self.cross_links:
            if source not in failed and reference.target_identity in failed:
                self.add_warning(
                    f"Link '{reference.raw_target}' in {source} points to "
                    f"{reference.target_identity}, which failed to render")

    def successful_sections(self, units):
        """Yields (unit, markup) for rendered units in ordinal order."""
        for unit in units:
            slot = self.rendered_sections[unit.ordinal]
            if slot.status == 'rendered':
                yield unit, slot.markup

    @property
    def rendered_count(self):
        return sum(1 for slot in self.rendered_sections if slot.status == 'rendered')

    def log_summary(self):
        """Logs every warning and failed unit so degraded output is visible even on success."""
        if self.warnings:
            logging.warning(f"{len(self.warnings)} warning(s) during consolidation:")
            for message in self.warnings:
                logging.warning(f"  - {message}")
        failed_slots = [slot for slot in self.rendered_sections if slot.status == 'failed']
        if failed_slots:
            logging.error(f"{len(failed_slots)} unit(s) failed to render:")
            for slot in failed_slots:
                logging.error(f"  - {slot.identity}: {slot.error}")


# --- Helper Functions ---

def setup_logging(log_file_path=None):
    """Configures logging to console and, optionally, a file."""
    log_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if log_file_path:
        try:
            file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
            file_handler.setFormatter(log_formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logger at {log_file_path}: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_formatter)
    root_logger.addHandler(console_handler)

    for noisy in ("requests", "urllib3", "playwright", "markdown", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_robot_parser(start_url):
    """Fetches and parses the robots.txt file for the site using requests."""
    parsed_uri = urlparse(start_url)
    rp = robotparser.RobotFileParser()
    if not parsed_uri.scheme or not parsed_uri.netloc:
        logging.error(f"Invalid URL for robots.txt: {start_url}")
        rp.allow_all = True
        return rp

    robots_url = f"{parsed_uri.scheme}://{parsed_uri.netloc}/robots.txt"
    logging.info(f"Attempting to fetch robots.txt from: {robots_url}")
    rp.set_url(robots_url)

    try:
        response = requests.get(robots_url, headers={"User-Agent": USER_AGENT}, timeout=REQUEST_TIMEOUT_SECONDS)
        if response.status_code == 404:
            logging.warning(f"robots.txt not found at {robots_url} (HTTP 404). Assuming allowed.")
            rp.allow_all = True
        elif response.status_code >= 400:
            logging.warning(f"HTTP error {response.status_code} fetching robots.txt from {robots_url}. Assuming allowed.")
            rp.allow_all = True
        else:
            rp.parse(response.text.splitlines())
            logging.info(f"Successfully fetched and parsed robots.txt for {parsed_uri.netloc}")
    except requests.exceptions.Timeout:
        logging.error(f"Timeout error fetching robots.txt from {robots_url} after {REQUEST_TIMEOUT_SECONDS} seconds. Assuming allowed.")
        rp.allow_all = True
    except requests.exceptions.RequestException as e:
        logging.error(f"Could not fetch robots.txt from {robots_url}: {e}. Assuming allowed.")
        rp.allow_all = True
    return rp


def can_fetch_url(robot_parser, url):
    """Checks if the URL is allowed by robots.txt for our User-Agent."""
    if robot_parser is None:
        return True
    parsed_url = urlparse(url)
    path_quoted = quote(parsed_url.path) if parsed_url.path else '/'
    check_url = urlunparse(('', '', path_quoted, '', parsed_url.query, ''))
    allowed = robot_parser.can_fetch(USER_AGENT, check_url)
    if not allowed:
        logging.warning(f"Access disallowed by robots.txt: {url}")
    return allowed


def make_absolute_url(base_url, link):
    """Converts a relative link to an absolute http(s) URL, or None."""
    try:
        abs_url = urljoin(base_url, link.strip())
    except ValueError as e:
        logging.warning(f"Could not join base '{base_url}' with link '{link}': {e}")
        return None
    if urlparse(abs_url).scheme in ['http', 'https']:
        return abs_url
    return None


def strip_fragment(url):
    return urlunparse(urlparse(url)._replace(fragment=''))


def sanitize_filename(name):
    """Removes or replaces characters illegal in filenames."""
    if not isinstance(name, str): name = str(name)
    name = re.sub(r'^https?:\/\/', '', name)
    name = re.sub(r'[\\/*?:"<>|]', '_', name)
    name = re.sub(r'\s+', '_', name)
    name = re.sub(r'_+', '_', name)
    name = name.strip('_./\\')
    return name[:80] or "document"


def is_url_source(source):
    return urlparse(source).scheme in ('http', 'https')


def validate_seed_url(seed_url):
    parsed = urlparse(seed_url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise InvalidSourceError(f"Invalid URL: {seed_url}. Include scheme (http/https) and host.")
    return seed_url


def validate_root_dir(root):
    root_dir = Path(root).resolve()
    if not root_dir.exists():
        raise InvalidSourceError(f"Provided path does not exist: {root_dir}")
    if not root_dir.is_dir():
        raise InvalidSourceError(f"Provided path is not a directory: {root_dir}")
    return root_dir


# --- Unit Enumeration ---

def enumerate_file_units(root_dir, extension=None):
    """Walks root_dir and returns Units for every file with the target extension, sorted by path."""
    extension = (extension or TARGET_EXTENSION).lower()
    root_dir = Path(root_dir)
    found = []
    stack = [root_dir]
    while stack:
        current = stack.pop()
        try:
            entries = list(os.scandir(current))
        except OSError as e:
            logging.warning(f"Could not list directory {current}: {e}")
            continue
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                stack.append(Path(entry.path))
            elif entry.is_file() and entry.name.lower().endswith(extension):
                found.append(Path(entry.path).relative_to(root_dir).as_posix())

    found.sort()
    if not found:
        raise NoContentFound(f"No '{extension}' files found under {root_dir}")

    units = []
    for ordinal, rel_path in enumerate(found):
        units.append(Unit(
            identity=rel_path,
            ordinal=ordinal,
            display_label=rel_path[:-len(extension)],
            kind='file',
            source_path=root_dir / rel_path,
        ))
    logging.info(f"Found {len(units)} '{extension}' file(s) under {root_dir}")
    return units


def url_display_label(url):
    parsed = urlparse(url)
    label = parsed.path.strip('/') or parsed.netloc
    if parsed.query:
        label += f"?{parsed.query}"
    return label


def extract_page_links(page_html, page_url):
    """Returns absolute http(s) hrefs of every <a> in document order."""
    soup = BeautifulSoup(page_html, 'html.parser')
    links = []
    for link_tag in soup.find_all('a', href=True):
        href = link_tag['href'].strip()
        if not href or href.lower().startswith(IGNORED_HREF_PREFIXES):
            continue
        abs_url = make_absolute_url(page_url, href)
        if abs_url:
            links.append(abs_url)
    return links


def enumerate_site_units(seed_url, fetch_page, robot_parser=None, path_prefix=None, result=None):
    """
    Renders the seed page and enumerates it plus every same-origin, same-prefix page it links to.
    Single-level fan-out: links found on the linked pages are not followed.
    Returns (units, seed_html) so the seed does not have to be rendered twice.
    """
    seed_identity = strip_fragment(seed_url)
    parsed_seed = urlparse(seed_identity)
    origin = (parsed_seed.scheme, parsed_seed.netloc)
    path_prefix = path_prefix if path_prefix is not None else parsed_seed.path

    if not can_fetch_url(robot_parser, seed_identity):
        raise NoContentFound(f"Seed page disallowed by robots.txt: {seed_identity}")

    logging.info(f"Navigating to seed page: {seed_identity}")
    try:
        seed_html = fetch_page(seed_identity)
    except Exception as e:
        raise NoContentFound(f"Could not render seed page {seed_identity}: {e}") from e

    logging.info("Collecting doc links...")
    seen = {seed_identity}
    identities = [seed_identity]
    for link_url in extract_page_links(seed_html, seed_identity):
        parsed_link = urlparse(link_url)
        if (parsed_link.scheme, parsed_link.netloc) != origin:
            continue
        if not parsed_link.path.startswith(path_prefix):
            continue
        identity = strip_fragment(link_url)
        if identity in seen:
            continue
        seen.add(identity)
        if not can_fetch_url(robot_parser, identity):
            if result is not None:
                result.add_warning(f"Skipped {identity}: disallowed by robots.txt")
            continue
        identities.append(identity)

    units = [
        Unit(identity=identity, ordinal=ordinal, display_label=url_display_label(identity), kind='page')
        for ordinal, identity in enumerate(identities)
    ]
    logging.info(f"Found {len(units) - 1} unique documentation page(s) linked from the seed")
    return units, seed_html


# --- Reference Resolution ---

# Fences may be indented (list items); an unclosed fence runs to the end of the text
MARKDOWN_FENCE_PATTERN = re.compile(
    r'^[ \t]*(?P<fence>`{3,}|~{3,})[^\n]*(?:\n.*?^[ \t]*(?P=fence)[`~]*[ \t]*$|.*\Z)',
    re.MULTILINE | re.DOTALL,
)

CODE_SPAN_PATTERN = re.compile(r'(?<!`)(?P<ticks>`+)(?!`)(?:[^\n]|\n(?![ \t]*\n))+?(?<!`)(?P=ticks)(?!`)')

MARKDOWN_TITLE = r'(?:\s+(?:"[^"\n]*"|\'[^\'\n]*\'|\([^)\n]*\)))?'

REFERENCE_PATTERN = re.compile(
    r'(?P<md>(?P<bang>!?)\[(?P<text>(?:[^\[\]\n]|!?\[[^\[\]\n]*\]\([^)\n]*\))*)\]\(\s*(?P<md_target><[^>\n]*>|[^)\s]+)'
    + MARKDOWN_TITLE + r'\s*\))'
    # link reference definitions: [label]: target "title"; footnotes ([^1]:) are not links
    r'|(?P<definition>^[ ]{0,3}\[(?P<def_label>[^\]\^\n][^\]\n]*)\]:[ \t]*(?P<def_target><[^>\n]*>|\S+))'
    r'|(?P<html><(?P<tag>img|a)\b[^>]*?\s(?P<attr>src|href)\s*=\s*(?P<quote>["\'])(?P<html_target>[^"\'>]*)(?P=quote))',
    re.IGNORECASE | re.MULTILINE,
)

# ![alt][label], ![alt][] and ![alt] pick up their target from a definition
IMAGE_LABEL_PATTERN = re.compile(r'!\[(?P<alt>[^\[\]\n]*)\](?!\()(?:\[(?P<label>[^\[\]\n]*)\])?')


def image_mime_type(path):
    return IMAGE_MIME_TYPES.get(Path(path).suffix.lower(), DEFAULT_IMAGE_MIME_TYPE)


def encode_image_data_uri(image_path):
    """Reads an image file and returns it as a base64 data URI."""
    data = Path(image_path).read_bytes()
    return f"data:{image_mime_type(image_path)};base64,{base64.b64encode(data).decode('ascii')}"


def classify_target(target):
    """Returns 'fragment', 'external' or 'local' for a raw reference target."""
    if target.startswith('#'):
        return 'fragment'
    if target.startswith('//') or urlparse(target).scheme:
        return 'external'
    return 'local'


def split_target(target):
    """Splits a local target into (unquoted path, fragment), dropping any query."""
    path, _, fragment = target.partition('#')
    path = path.partition('?')[0]
    return unquote(path), fragment


def build_unit_index(units):
    return {unit.identity: unit for unit in units}


def anchor_target(unit, fragment):
    if fragment:
        return f"#{unit.section_anchor}-{fragment}"
    return f"#{unit.section_anchor}"


def match_file_unit(path, unit, unit_index, extension):
    """Finds the enumerated unit a local link path names, relative to the linking unit."""
    if path.startswith('/'):
        candidate = posixpath.normpath(path.lstrip('/'))
    else:
        candidate = posixpath.normpath(posixpath.join(posixpath.dirname(unit.identity), path))
    if candidate.startswith('..'):
        return None
    if candidate in unit_index:
        return unit_index[candidate]
    if not posixpath.splitext(candidate)[1]:
        return unit_index.get(candidate + extension)
    return None


def resolve_image_file(target, unit, root_dir):
    """Locates a local image relative to the unit's file (or root_dir for absolute paths)."""
    path, _ = split_target(target)
    if not path:
        return None
    if path.startswith('/'):
        return Path(root_dir) / path.lstrip('/')
    return unit.source_path.parent / path


def normalize_label(label):
    """Link labels match case-insensitively with runs of whitespace collapsed."""
    return ' '.join(label.split()).lower()


def protected_spans(text):
    """Returns (start, end) spans of fenced code blocks and inline code spans, in order."""
    spans = []
    position = 0
    for fence in MARKDOWN_FENCE_PATTERN.finditer(text):
        spans.extend(span.span() for span in CODE_SPAN_PATTERN.finditer(text, position, fence.start()))
        spans.append(fence.span())
        position = fence.end()
    spans.extend(span.span() for span in CODE_SPAN_PATTERN.finditer(text, position))
    return spans


def resolve_file_references(raw_text, unit, unit_index, root_dir, extension=None):
    """
    Rewrites references in a structured-text unit so they stay valid in the merged document.

    Cross-unit links become section anchors (keeping any fragment), local images are
    inlined as data URIs, and fragment-only or external references are left alone.
    A missing image is reported as a warning and its reference is left untouched.
    Inline links, link reference definitions and inline <a>/<img> tags are handled
    in order of occurrence, each exactly once; code fences and code spans are skipped.
    """
    extension = (extension or TARGET_EXTENSION).lower()
    resolved = ResolvedContent(content='')
    spans = protected_spans(raw_text)
    image_labels = set()
    for match in IMAGE_LABEL_PATTERN.finditer(raw_text):
        if not any(start <= match.start() < end for start, end in spans):
            image_labels.add(normalize_label(match.group('label') or match.group('alt')))

    def resolve_image(target):
        target_class = classify_target(target)
        if target_class != 'local':
            return Reference(target_class, target, target, 'unchanged')
        image_path = resolve_image_file(target, unit, root_dir)
        if image_path is None or not image_path.is_file():
            resolved.warnings.append(f"Missing image '{target}' referenced in {unit.identity}")
            return Reference('image', target, target, 'warned')
        try:
            return Reference('image', target, encode_image_data_uri(image_path), 'inlined')
        except OSError as e:
            resolved.warnings.append(f"Could not read image '{target}' referenced in {unit.identity}: {e}")
            return Reference('image', target, target, 'warned')

    def resolve_link(target):
        target_class = classify_target(target)
        if target_class != 'local':
            return Reference(target_class, target, target, 'unchanged')
        path, fragment = split_target(target)
        target_unit = match_file_unit(path, unit, unit_index, extension)
        if target_unit is not None:
            return Reference('cross_unit', target, anchor_target(target_unit, fragment), 'rewritten',
                             target_unit.identity)
        if path.lower().endswith(extension):
            resolved.warnings.append(f"Unresolved link '{target}' in {unit.identity}")
            return Reference('cross_unit', target, target, 'warned')
        return Reference('external', target, target, 'unchanged')

    def replace(match):
        if match.group('md'):
            group = 'md_target'
            is_image = bool(match.group('bang'))
        elif match.group('definition'):
            group = 'def_target'
            is_image = normalize_label(match.group('def_label')) in image_labels
        else:
            group = 'html_target'
            tag = match.group('tag').lower()
            attr = match.group('attr').lower()
            if (tag, attr) not in (('img', 'src'), ('a', 'href')):
                return match.group(0)
            is_image = tag == 'img'

        text = match.group(0)
        base = match.start(0)
        edits = []
        if group == 'md_target' and not is_image and match.group('text'):
            # a link label may itself hold an image or inline <img>
            label = match.group('text')
            new_label = REFERENCE_PATTERN.sub(replace, label)
            if new_label != label:
                edits.append((match.start('text') - base, match.end('text') - base, new_label))

        raw_target = match.group(group)
        target = raw_target[1:-1] if raw_target.startswith('<') and raw_target.endswith('>') else raw_target
        if target:
            reference = resolve_image(target) if is_image else resolve_link(target)
            resolved.references.append(reference)
            if reference.resolved_target != target:
                edits.append((match.start(group) - base, match.end(group) - base, reference.resolved_target))

        for start, end, replacement in reversed(edits):
            text = text[:start] + replacement + text[end:]
        return text

    parts = []
    cursor = position = 0
    while True:
        match = REFERENCE_PATTERN.search(raw_text, position)
        if match is None:
            break
        span = next(((start, end) for start, end in spans if start <= match.start() < end), None)
        if span is not None:
            position = span[1]
            continue
        parts.append(raw_text[cursor:match.start()])
        parts.append(replace(match))
        cursor = position = match.end()
    parts.append(raw_text[cursor:])
    resolved.content = ''.join(parts)
    return resolved


def resolve_dom_references(page_html, unit, unit_index):
    """Rewrites <a href> and <img src> in a rendered page for the merged document."""
    resolved = ResolvedContent(content='')
    soup = BeautifulSoup(page_html, 'html.parser')

    for tag in soup.find_all(['a', 'img']):
        attr = 'href' if tag.name == 'a' else 'src'
        target = tag.get(attr)
        if not target or not target.strip():
            continue
        target = target.strip()
        target_class = classify_target(target)

        if tag.name == 'img':
            if target_class == 'local':
                abs_url = make_absolute_url(unit.identity, target)
                if abs_url:
                    tag[attr] = abs_url
                    resolved.references.append(Reference('image', target, abs_url, 'rewritten'))
                    continue
            resolved.references.append(Reference('image', target, target, 'unchanged'))
            continue

        if target_class == 'fragment':
            resolved.references.append(Reference('fragment', target, target, 'unchanged'))
            continue
        abs_url = make_absolute_url(unit.identity, target)
        target_unit = unit_index.get(strip_fragment(abs_url)) if abs_url else None
        if target_unit is None:
            resolved.references.append(Reference('external', target, target, 'unchanged'))
            continue
        new_target = anchor_target(target_unit, urlparse(abs_url).fragment)
        tag[attr] = new_target
        resolved.references.append(Reference('cross_unit', target, new_target, 'rewritten', target_unit.identity))

    resolved.content = str(soup)
    return resolved


# --- Unit Rendering ---

FRONT_MATTER_PATTERN = re.compile(r'\A---\s*\n.*?\n---\s*(?:\n|\Z)', re.DOTALL)
ESM_LINE_PATTERN = re.compile(
    r'''^(?:import\s.+?\sfrom\s+['"]|import\s+['"]|export\s+(?:const|let|var|function|default|\{))''')


def strip_mdx_preamble(text):
    """Drops YAML front matter and top-level MDX import/export lines outside code fences."""
    text = FRONT_MATTER_PATTERN.sub('', text, count=1)
    lines = []
    in_fence = None
    for line in text.splitlines(keepends=True):
        stripped = line.lstrip()
        fence = re.match(r'(`{3,}|~{3,})', stripped)
        if fence:
            if in_fence is None:
                in_fence = fence.group(1)
            elif stripped.startswith(in_fence):
                in_fence = None
        elif in_fence is None and ESM_LINE_PATTERN.match(line):
            continue
        lines.append(line)
    return ''.join(lines)


def render_markdown(text):
    """Parses structured text into HTML with Python-Markdown."""
    return markdown.markdown(strip_mdx_preamble(text), extensions=MARKDOWN_EXTENSIONS, output_format='html')


def extract_page_body(page_html):
    """Returns the inner HTML of <body> with scripts removed."""
    soup = BeautifulSoup(page_html, 'html.parser')
    for tag in soup.find_all(['script', 'noscript']):
        tag.decompose()
    container = soup.body or soup
    return ''.join(str(child) for child in container.children)


def render_file_unit(unit, unit_index, root_dir, result, extension=None, markdown_renderer=None):
    raw_text = unit.source_path.read_text(encoding='utf-8')
    resolved = resolve_file_references(raw_text, unit, unit_index, root_dir, extension)
    result.record_links(unit, resolved.references)
    for message in resolved.warnings:
        result.add_warning(message)
    return (markdown_renderer or render_markdown)(resolved.content)


def render_page_unit(unit, unit_index, fetch_page, result, preloaded_html=None):
    page_html = preloaded_html if preloaded_html is not None else fetch_page(unit.identity)
    resolved = resolve_dom_references(page_html, unit, unit_index)
    result.record_links(unit, resolved.references)
    for message in resolved.warnings:
        result.add_warning(message)
    return extract_page_body(resolved.content)


def process_units(units, render_unit, result):
    """Renders units one at a time in ordinal order; a failing unit is recorded and skipped."""
    total = len(units)
    for unit in units:
        logging.info(f"Processing unit {unit.ordinal + 1}/{total}: {unit.identity}")
        try:
            markup = render_unit(unit)
        except Exception as e:
            logging.error(f"Error processing {unit.identity}: {e}", exc_info=True)
            result.record_failure(unit, e)
            continue
        result.record_rendered(unit, markup)

    result.flag_dangling_links()
    result.log_summary()
    if total and len(result.failed_units) == total:
        raise AllUnitsFailed(f"All {total} unit(s) failed to render; nothing to assemble.")
    return result


# --- Assembly ---

def add_fragment_aliases(markup, section_anchor):
    """Places an <a id="<anchor>-<id>"> before every element with an id, leaving ids unchanged."""
    soup = BeautifulSoup(markup, 'html.parser')
    for element in soup.find_all(id=True):
        alias = soup.new_tag('a', id=f"{section_anchor}-{element['id']}")
        element.insert_before(alias)
    return str(soup)


def path_depth(display_label):
    return display_label.count('/')


def build_toc(sections):
    """Builds the table of contents for the rendered (unit, markup) pairs."""
    lines = ['<nav class="toc" id="toc">', '<h1>Table of Contents</h1>', '<ul>']
    for unit, _ in sections:
        depth = path_depth(unit.display_label)
        lines.append(
            f'<li class="toc-depth-{depth}" style="margin-left: {depth * 1.5}em">'
            f'<a href="#{unit.section_anchor}">{html.escape(unit.display_label)}</a></li>'
        )
    lines.extend(['</ul>', '</nav>'])
    return '\n'.join(lines)


def build_file_section(unit, markup):
    return (
        f'<section class="unit-section" id="{unit.section_anchor}">\n'
        f'<h1 class="unit-title">{html.escape(unit.display_label)}</h1>\n'
        f'<div class="file-path">Path: {html.escape(unit.identity)}</div>\n'
        f'<div class="unit-content">{add_fragment_aliases(markup, unit.section_anchor)}</div>\n'
        f'</section>'
    )


def build_page_section(unit, markup, is_last):
    page_break = '' if is_last else '\n<div class="page-break"></div>'
    return (
        f'<div class="page-content" id="{unit.section_anchor}">\n'
        f'<h1 class="unit-title">{html.escape(unit.display_label)}</h1>\n'
        f'{add_fragment_aliases(markup, unit.section_anchor)}{page_break}\n'
        f'</div>'
    )


def assemble_document(units, result):
    """Merges rendered sections (skipping failed ones) behind a table of contents."""
    sections = list(result.successful_sections(units))
    parts = [build_toc(sections)]
    for position, (unit, markup) in enumerate(sections):
        if unit.kind == 'page':
            parts.append(build_page_section(unit, markup, is_last=position == len(sections) - 1))
        else:
            parts.append(build_file_section(unit, markup))
    logging.info(f"Assembled {len(sections)} section(s)")
    return '<div id="content">\n' + '\n'.join(parts) + '\n</div>'


def compose_html_document(body, stylesheet):
    return (
        '<!DOCTYPE html>\n<html>\n<head>\n<meta charset="utf-8">\n'
        f'<style>{stylesheet}</style>\n</head>\n<body>\n{body}\n</body>\n</html>'
    )


# --- Browser Session (Rendering + PDF emission) ---

class BrowserSession:
    """
    Owns the single Playwright browser, context and page used for a whole run.
    Chromium is launched on first use, so runs that abort before rendering never start it.
    """

    def __init__(self, user_agent=None, viewport=None, headless=True):
        self.user_agent = user_agent or USER_AGENT
        self.viewport = viewport or VIEWPORT
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._page = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def page(self):
        if self._page is None:
            logging.info("Launching headless Chromium (playwright)...")
            self._playwright = sync_playwright().start()
            try:
                self._browser = self._playwright.chromium.launch(headless=self.headless)
                context = self._browser.new_context(user_agent=self.user_agent, viewport=self.viewport)
                self._page = context.new_page()
            except Exception:
                self.close()
                raise
        return self._page

    def close(self):
        if self._browser:
            self._browser.close()
            self._browser = None
        if self._playwright:
            self._playwright.stop()
            self._playwright = None
        self._page = None

    def fetch_page(self, url):
        """Navigates to url and returns the DOM once the network is idle."""
        logging.info(f"Rendering (playwright): {url}")
        page = self.page
        page.goto(url, timeout=PAGE_LOAD_TIMEOUT_SECONDS * 1000, wait_until=PAGE_WAIT_UNTIL)
        return page.content()

    def emit_pdf(self, body, stylesheet, output_path, page_options):
        """Lays out the merged body and prints it to a PDF at output_path."""
        page = self.page
        page.set_content(compose_html_document(body, stylesheet),
                         timeout=PAGE_LOAD_TIMEOUT_SECONDS * 1000, wait_until=PAGE_WAIT_UNTIL)
        page.wait_for_selector('#content', state='attached')
        page.pdf(path=str(output_path), **page_options.to_playwright())


def emit_artifact(session, body, stylesheet, output_path, page_options):
    logging.info(f"Generating PDF: {output_path}")
    try:
        session.emit_pdf(body, stylesheet, output_path, page_options)
    except Exception as e:
        raise EmissionError(f"Failed to generate {output_path}: {e}") from e
    logging.info(f"Generated {output_path}")


# --- Main Consolidation Logic ---

def consolidate_directory(root, session, output_path=None, extension=None, markdown_renderer=None):
    """Merges every structured-text file under root into one PDF via session."""
    root_dir = validate_root_dir(root)
    extension = extension or TARGET_EXTENSION
    output_path = output_path or OUTPUT_FILENAME
    logging.info(f"--- Consolidating '{extension}' files in {root_dir} ---")

    result = ConsolidationResult(output_path=str(output_path))
    units = enumerate_file_units(root_dir, extension)
    result.allocate(units)
    unit_index = build_unit_index(units)

    process_units(
        units,
        lambda unit: render_file_unit(unit, unit_index, root_dir, result, extension, markdown_renderer),
        result,
    )
    body = assemble_document(units, result)
    emit_artifact(session, body, FILE_MODE_STYLESHEET, output_path, FILE_MODE_PAGE_OPTIONS)
    return result


def consolidate_site(seed_url, session, output_path=None, robot_parser=None, path_prefix=None):
    """Merges the seed page and the pages it links to into one PDF via session."""
    validate_seed_url(seed_url)
    output_path = output_path or OUTPUT_FILENAME
    logging.info(f"--- Starting PDF generation from: {seed_url} ---")

    result = ConsolidationResult(output_path=str(output_path))
    units, seed_html = enumerate_site_units(seed_url, session.fetch_page, robot_parser, path_prefix, result)
    result.allocate(units)
    unit_index = build_unit_index(units)

    def render_unit(unit):
        preloaded = seed_html if unit.ordinal == 0 else None
        return render_page_unit(unit, unit_index, session.fetch_page, result, preloaded)

    process_units(units, render_unit, result)
    body = assemble_document(units, result)
    emit_artifact(session, body, CRAWL_MODE_STYLESHEET, output_path, CRAWL_MODE_PAGE_OPTIONS)
    return result


def run_consolidation(source, output_path=None, extension=None, respect_robots=None, path_prefix=None,
                      session_factory=None):
    """Picks crawl or file mode from source and runs a full consolidation."""
    session_factory = session_factory or BrowserSession
    if respect_robots is None:
        respect_robots = RESPECT_ROBOTS_TXT

    if is_url_source(source):
        validate_seed_url(source)
        robot_parser = get_robot_parser(source) if respect_robots else None
        with session_factory() as session:
            return consolidate_site(source, session, output_path, robot_parser, path_prefix)

    root_dir = validate_root_dir(source)
    with session_factory() as session:
        return consolidate_directory(root_dir, session, output_path, extension)


# --- Main Execution ---

def build_arg_parser():
    parser = argparse.ArgumentParser(
        description="Consolidate a directory of structured-text files, or a documentation site, into one PDF.")
    parser.add_argument("source", help="Root directory of files, or the seed URL of a documentation site.")
    parser.add_argument("--ext", default=None, help=f"File extension to collect in directory mode (default: {TARGET_EXTENSION}).")
    parser.add_argument("--output", default=None, help=f"Output PDF path (default: {OUTPUT_FILENAME}).")
    parser.add_argument("--path-prefix", default=None, help="URL path prefix crawled pages must start with (default: the seed's path).")
    parser.add_argument("--ignore-robots", action="store_true", help="Do not consult robots.txt in crawl mode.")
    parser.add_argument("--log-file", default=None, help="Also write the log to this file.")
    return parser


def main(argv=None):
    parser = build_arg_parser()
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        parser.print_help(sys.stderr)
        return 1
    args = parser.parse_args(argv)
    setup_logging(args.log_file)

    started = datetime.datetime.now()
    try:
        result = run_consolidation(
            args.source,
            output_path=args.output,
            extension=args.ext,
            respect_robots=not args.ignore_robots,
            path_prefix=args.path_prefix,
        )
    except ConsolidationError as e:
        logging.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    elapsed = (datetime.datetime.now() - started).total_seconds()
    print(f"\n--- Consolidation complete ({elapsed:.1f}s) ---")
    print(f"Sections rendered: {result.rendered_count}/{len(result.rendered_sections)}")
    if result.failed_units:
        print(f"Failed units: {', '.join(result.failed_units)}")
    print(f"PDF saved to: {result.output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
