#!/usr/bin/env python3
import argparse
import codecs
import hashlib
import html
import logging
import os
import posixpath
import random
import re
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import redirect_stdout
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Set, TextIO, Tuple, Union
from urllib.parse import quote, unquote, urldefrag, urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup, SoupStrainer
from requests.adapters import HTTPAdapter
from tqdm import tqdm
from urllib3.util.retry import Retry

# -------------------- Config --------------------

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]

DEFAULT_HEADERS = {
    "User-Agent": USER_AGENTS[0],
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

ACCEPT_HEADERS = {
    "html": "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,*/*;q=0.8",
    "image": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
    "js": "text/javascript,application/javascript,application/ecmascript,"
    "application/x-ecmascript",
    "css": "text/css,*/*;q=0.1",
    "default": "*/*",
}

CHUNK_SIZE = 64 * 1024

PAGE_EXTS = {".html", ".htm"}
IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".avif"}
# rel tokens of <link> tags that are mirrored as plain files
LEAF_LINK_RELS = {
    "icon",
    "apple-touch-icon",
    "apple-touch-icon-precomposed",
    "mask-icon",
    "manifest",
}
URL_ATTRS = {
    "a": ("href",),
    "link": ("href",),
    "img": ("src",),
    "script": ("src",),
}

# Document kinds understood by the extractor
HTML, CSS, JS = "html", "css", "js"

# What the crawl does with a reference
PAGE, STYLESHEET, SCRIPT, FILE = "page", "stylesheet", "script", "file"

HTML_SCAN_RE = re.compile(
    r"(?P<style_open><style\b[^>]*>)(?P<style_body>.*?)(?P<style_close></style\s*>)"
    r"|(?P<script_open><script\b[^>]*>)(?P<script_body>.*?)(?P<script_close></script\s*>)"
    r"|(?P<tag><(?P<name>[a-zA-Z][\w:-]*)[^>]*>)",
    re.IGNORECASE | re.DOTALL,
)
TAG_ATTR_RE = re.compile(
    r"(?P<prefix>\s(?P<attr>[^\s\"'<>/=]+)\s*=\s*)"
    r"(?:(?P<q>[\"'])(?P<quoted>.*?)(?P=q)|(?P<bare>[^\s\"'>]+))",
    re.DOTALL,
)
CSS_REF_RE = re.compile(
    r"(?P<url>url\(\s*(?P<uq>[\"']?)(?P<u>[^)\"']+)(?P=uq)\s*\))"
    r"|(?P<import>@import\s+(?P<iq>[\"'])(?P<i>[^\"']+)(?P=iq))",
    re.IGNORECASE,
)
JS_STRING_RE = re.compile(r"(?P<q>[\"'])(?P<s>[^\"'\s]+)(?P=q)")
JS_IMAGE_PATH_RE = re.compile(
    r"\.(?:jpe?g|png|gif|svg|webp)(?:[?#]|$)|/(?:images|img)/.", re.IGNORECASE
)
CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)
RATE_LIMIT_RE = re.compile(r"^(\d+)([kKmM]?)$")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
KEPT_ESCAPES_RE = re.compile(r"(%2[fF5])")

# -------------------- Errors --------------------


class MirrorError(Exception):
    pass


class FetchError(MirrorError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ParseError(MirrorError):
    pass


class PathError(ParseError):
    pass


class MirrorIOError(MirrorError):
    pass


# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 30.0
    max_bytes: int = 50_000_000
    rate_limit: int = 0  # bytes per second, 0 = unlimited
    background: bool = False


@dataclass(frozen=True)
class MirrorJob:
    url: str
    reject: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    convert_links: bool = False
    output_dir: str = "."

    def __post_init__(self) -> None:
        object.__setattr__(self, "reject", tuple(self.reject))
        object.__setattr__(self, "exclude", tuple(self.exclude))

    @property
    def host(self) -> str:
        return (urlparse(self.url).hostname or "").lower()

    @property
    def root(self) -> Path:
        return Path(self.output_dir) / sanitize_filename(urlparse(self.url).netloc)


@dataclass
class CrawlState:
    visited: Set[str] = field(default_factory=set)
    pages_written: int = 0
    files_written: int = 0
    skipped: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def claim(self, url: str) -> bool:
        """Mark ``url`` visited; False if someone already did."""
        with self.lock:
            if url in self.visited:
                return False
            self.visited.add(url)
            return True

    def __contains__(self, url: str) -> bool:
        return url in self.visited


@dataclass(frozen=True)
class Reference:
    kind: str  # source tag: a | link | script | img
    literal: str
    url: str
    rel: str = ""


@dataclass
class Extraction:
    references: List[Reference] = field(default_factory=list)
    text: str = ""


@dataclass
class FetchResult:
    url: str
    status: int
    content_type: str
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_html(self) -> bool:
        return "text/html" in (self.content_type or "").lower()


# -------------------- Throttle --------------------


class TokenBucket:
    def __init__(self, rate: float, capacity: float):
        self.rate = max(rate, 0.001)
        self.capacity = max(capacity, 1.0)
        self.tokens = self.capacity
        self.ts = time.monotonic()
        self.lock = Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        delta = now - self.ts
        if delta > 0:
            self.tokens = min(self.capacity, self.tokens + delta * self.rate)
            self.ts = now

    def consume_wait(self, tokens: float = 1.0) -> float:
        with self.lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0
            need = tokens - self.tokens
            wait = need / self.rate
            self.tokens = 0.0
            self.ts = time.monotonic() + wait
            return max(0.0, wait)


class RateLimiter:
    def __init__(self, rate: int):
        self.rate = rate
        self.bucket = TokenBucket(rate, rate) if rate > 0 else None

    def throttle(self, nbytes: int) -> None:
        if self.bucket is None:
            return
        wait = self.bucket.consume_wait(nbytes)
        if wait > 0:
            time.sleep(wait)


def parse_rate_limit(value: Optional[str]) -> int:
    if not value:
        return 0
    m = RATE_LIMIT_RE.match(value.strip())
    if not m:
        raise ValueError(f"invalid rate limit {value!r}, use e.g. 400k or 2M")
    unit = {"": 1, "k": 1024, "m": 1024 * 1024}[m.group(2).lower()]
    return int(m.group(1)) * unit


# -------------------- Utils --------------------


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip().lower()
    if not u:
        return False
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def short_h(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()[:8]


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def url_extension(url: str) -> str:
    path = urlparse(url).path
    return posixpath.splitext(posixpath.basename(path))[1].lower()


def normalize_url(u: str) -> str:
    p = urlparse(u)
    return urlunparse(
        (p.scheme.lower(), p.netloc.lower(), p.path or "/", p.params, p.query, "")
    )


def resolve_reference(literal: str, base_url: str) -> Optional[str]:
    literal = literal.strip()
    if not can_fetch_url(literal):
        return None
    try:
        absu, _ = urldefrag(urljoin(base_url, literal))
        if urlparse(absu).scheme not in ("http", "https"):
            return None
        return normalize_url(absu)
    except ValueError as e:
        logging.debug("unparseable reference %r on %s: %s", literal, base_url, e)
        return None


def decode_body(body: bytes, content_type: Optional[str]) -> Tuple[str, str]:
    m = CHARSET_RE.search(content_type or "")
    encoding = m.group(1).lower() if m else "utf-8"
    try:
        # base64, hex, rot13 etc. resolve but are not text codecs
        if not codecs.lookup(encoding)._is_text_encoding:
            encoding = "utf-8"
    except LookupError:
        encoding = "utf-8"
    # surrogateescape keeps undecodable bytes intact on the way back out
    try:
        return body.decode(encoding, errors="surrogateescape"), encoding
    except UnicodeError as e:
        logging.debug("cannot decode body as %s (%s), using utf-8", encoding, e)
        return body.decode("utf-8", errors="surrogateescape"), "utf-8"


def encode_body(text: str, encoding: str) -> bytes:
    try:
        return text.encode(encoding, errors="surrogateescape")
    except (LookupError, UnicodeError) as e:
        raise ParseError(f"cannot encode document as {encoding}: {e}") from e


def filename_from_url(url: str) -> str:
    name = posixpath.basename(unquote(urlparse(url).path))
    return sanitize_filename(name) if name else "index.html"


# -------------------- Path mapping --------------------


def _unquote_path(path: str) -> str:
    # %2F and %25 stay encoded: decoding them would merge distinct URLs
    # and make the mapping drift when applied to its own output
    parts = KEPT_ESCAPES_RE.split(path)
    return "".join(
        part.upper() if i % 2 else unquote(part) for i, part in enumerate(parts)
    )


def url_to_relative_path(url: str) -> str:
    try:
        p = urlparse(url)
    except ValueError as e:
        raise PathError(f"cannot parse URL {url!r}: {e}") from e
    path = _unquote_path(p.path) or "/"
    if "\x00" in path:
        raise PathError(f"unsafe path in URL {url!r}")
    if path.endswith("/"):
        path += "index.html"
    elif not posixpath.splitext(posixpath.basename(path))[1]:
        path += ".html"
    if p.query:
        stem, ext = posixpath.splitext(path)
        path = f"{stem}_{short_h(p.query)}{ext}"
    # anchored at "/" so ".." can never climb out of the mirror root
    clean = posixpath.normpath("/" + path.lstrip("/"))
    return "./" + clean.lstrip("/")


def local_path_for_url(url: str, root: Path) -> Path:
    rel = url_to_relative_path(url)
    return root.joinpath(*rel[2:].split("/"))


# -------------------- Scope --------------------


def _normalize_host(host: Optional[str]) -> str:
    if not host:
        return ""
    host = host.lower()
    if host.startswith("["):
        return host[1:].split("]")[0]
    # a single colon is a port; more means a bare IPv6 address
    if host.count(":") == 1:
        host = host.split(":")[0]
    return host.rstrip(".")


def is_same_or_subdomain(base_host: str, host: str) -> bool:
    base_labels = _normalize_host(base_host).split(".")
    labels = _normalize_host(host).split(".")
    if not base_labels[-1] or len(labels) < len(base_labels):
        return False
    return labels[-len(base_labels):] == base_labels


def should_reject(url: str, reject: Tuple[str, ...]) -> bool:
    return any(suffix and url.endswith(suffix) for suffix in reject)


def _as_site_path(p: str) -> str:
    p = p.strip()
    if p.startswith("./"):
        p = p[1:]
    if not p.startswith("/"):
        p = "/" + p
    return p


def is_excluded_path(relative_path: str, exclude: Tuple[str, ...]) -> bool:
    site_path = _as_site_path(relative_path)
    return any(
        site_path.startswith(_as_site_path(prefix)) for prefix in exclude if prefix.strip()
    )


def classify(ref: Reference) -> Optional[str]:
    ext = url_extension(ref.url)
    if ref.kind == "a":
        return PAGE if not ext or ext in PAGE_EXTS else None
    if ref.kind == "link":
        if ext == ".css":
            return STYLESHEET
        if set(ref.rel.split()) & LEAF_LINK_RELS:
            return FILE
        return None
    if ref.kind == "script":
        return SCRIPT if ext == ".js" else None
    if ref.kind == "img":
        return FILE
    return None


def resolve_action(ref: Reference, job: MirrorJob) -> Optional[str]:
    if not is_same_or_subdomain(job.host, urlparse(ref.url).hostname or ""):
        logging.debug("skipping external resource: %s", ref.url)
        return None
    if should_reject(ref.url, job.reject):
        logging.debug("skipping rejected URL: %s", ref.url)
        return None
    action = classify(ref)
    if action == PAGE and job.exclude:
        try:
            if is_excluded_path(url_to_relative_path(ref.url), job.exclude):
                return None
        except PathError:
            return None
    return action


# -------------------- Extraction --------------------

Emit = Callable[..., Optional[str]]
RewriteFn = Callable[[Reference], Optional[str]]


def effective_base_url(html_text: str, fallback: str) -> str:
    soup = BeautifulSoup(html_text, "html.parser", parse_only=SoupStrainer("base"))
    tag = soup.find("base", href=True)
    if tag is None or not can_fetch_url(tag.get("href")):
        return fallback
    try:
        return urljoin(fallback, tag["href"].strip())
    except ValueError:
        return fallback


def _literal_path(literal: str) -> str:
    return literal.split("#", 1)[0].split("?", 1)[0]


def _attr_value(m: re.Match) -> str:
    return m.group("quoted") if m.group("q") else m.group("bare")


def _scan_css(text: str, emit: Emit) -> str:
    def repl(m: re.Match) -> str:
        if m.group("url") is not None:
            q, literal = m.group("uq"), m.group("u").strip()
            if _literal_path(literal).lower().endswith(".css"):
                new = emit("link", literal, "stylesheet")
            else:
                new = emit("img", literal)
            return m.group(0) if new is None else f"url({q}{new}{q})"
        q, literal = m.group("iq"), m.group("i").strip()
        new = emit("link", literal, "stylesheet")
        return m.group(0) if new is None else f"@import {q}{new}{q}"

    return CSS_REF_RE.sub(repl, text)


def _scan_js(text: str, emit: Emit) -> str:
    def repl(m: re.Match) -> str:
        literal = m.group("s")
        if not JS_IMAGE_PATH_RE.search(literal):
            return m.group(0)
        new = emit("img", literal)
        if new is None:
            return m.group(0)
        return f"{m.group('q')}{new}{m.group('q')}"

    return JS_STRING_RE.sub(repl, text)


def _scan_tag(tag: str, name: str, emit: Emit) -> str:
    url_attrs = URL_ATTRS.get(name, ())
    rel = ""
    if name == "link":
        for m in TAG_ATTR_RE.finditer(tag):
            if m.group("attr").lower() == "rel":
                rel = _attr_value(m).lower()

    def repl(m: re.Match) -> str:
        attr = m.group("attr").lower()
        value = _attr_value(m)
        q = m.group("q") or ""
        if attr == "style":
            css = html.unescape(value)
            new = _scan_css(css, emit)
            if new == css:
                return m.group(0)
            new = html.escape(new, quote=bool(q))
        elif attr in url_attrs:
            new = emit(name, value, rel, True)
        else:
            return m.group(0)
        if new is None or new == value:
            return m.group(0)
        return f"{m.group('prefix')}{q}{new}{q}"

    return TAG_ATTR_RE.sub(repl, tag)


def _scan_html(text: str, emit: Emit) -> str:
    def repl(m: re.Match) -> str:
        if m.group("style_open") is not None:
            body = _scan_css(m.group("style_body"), emit)
            return m.group("style_open") + body + m.group("style_close")
        if m.group("script_open") is not None:
            open_tag = _scan_tag(m.group("script_open"), "script", emit)
            body = _scan_js(m.group("script_body"), emit)
            return open_tag + body + m.group("script_close")
        return _scan_tag(m.group("tag"), m.group("name").lower(), emit)

    return HTML_SCAN_RE.sub(repl, text)


SCANNERS: Dict[str, Callable[[str, Emit], str]] = {
    HTML: _scan_html,
    CSS: _scan_css,
    JS: _scan_js,
}


def extract_references(
    text: str,
    base_url: str,
    doc_type: str,
    rewrite: Optional[RewriteFn] = None,
) -> Extraction:
    """Find the references embedded in an HTML, CSS or JS document.

    ``rewrite`` is called for every reference found; a non-None return
    value replaces the reference's literal in the returned text.
    """
    scanner = SCANNERS.get(doc_type)
    if scanner is None:
        raise ValueError(f"unknown document type: {doc_type!r}")
    if doc_type == HTML:
        base_url = effective_base_url(text, base_url)
    references: List[Reference] = []

    def emit(kind: str, literal: str, rel: str = "", escaped: bool = False) -> Optional[str]:
        target = html.unescape(literal) if escaped else literal
        url = resolve_reference(target, base_url)
        if url is None:
            return None
        ref = Reference(kind=kind, literal=literal, url=url, rel=rel)
        references.append(ref)
        return rewrite(ref) if rewrite is not None else None

    new_text = scanner(text, emit)
    return Extraction(references=references, text=new_text)


# -------------------- Rewriter --------------------


class LinkRewriter:
    """Maps references of one saved document onto the local mirror tree.

    Targets are written relative to the document's own location so the
    copy browses offline at any depth; for documents at the mirror root
    that is exactly the ``./``-prefixed mapped path. Deeper documents get
    ``../`` forms instead of the bare ``url_to_relative_path`` output.
    """

    def __init__(self, job: MirrorJob, document_url: str):
        self.job = job
        self.document_url = document_url
        self.document_dir = posixpath.dirname(url_to_relative_path(document_url)[1:])

    def __call__(self, ref: Reference) -> Optional[str]:
        if not self.job.convert_links:
            return None
        if resolve_action(ref, self.job) is None:
            return None
        try:
            target = url_to_relative_path(ref.url)
        except PathError:
            return None
        rel = quote(posixpath.relpath(target[1:], self.document_dir))
        if not rel.startswith("."):
            rel = "./" + rel
        if ref.kind == "a":
            _, frag = urldefrag(ref.literal)
            if frag:
                rel = f"{rel}#{frag}"
        return rel


def rewrite_document(text: str, document_url: str, doc_type: str, job: MirrorJob) -> str:
    return extract_references(text, document_url, doc_type, LinkRewriter(job, document_url)).text


# -------------------- HTTP --------------------


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=5,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.max_redirects = 10
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


def accept_header_for(url: str) -> str:
    ext = url_extension(url)
    if ext in PAGE_EXTS:
        return ACCEPT_HEADERS["html"]
    if ext in IMAGE_EXTS:
        return ACCEPT_HEADERS["image"]
    if ext in (".js", ".mjs"):
        return ACCEPT_HEADERS["js"]
    if ext == ".css":
        return ACCEPT_HEADERS["css"]
    return ACCEPT_HEADERS["default"]


def browser_headers(url: str) -> Dict[str, str]:
    headers = {
        "User-Agent": random.choice(USER_AGENTS),
        "Accept": accept_header_for(url),
    }
    p = urlparse(url)
    if p.path not in ("", "/"):
        headers["Referer"] = f"{p.scheme}://{p.netloc}/"
    return headers


class Fetcher:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session if session is not None else build_session()
        self.limiter = RateLimiter(settings.rate_limit)

    def fetch(self, url: str) -> FetchResult:
        try:
            resp = self.session.get(
                url, headers=browser_headers(url), timeout=self.settings.timeout, stream=True
            )
        except requests.RequestException as e:
            raise FetchError(f"could not access {url}: {e}") from e
        try:
            status = resp.status_code
            content_type = resp.headers.get("Content-Type", "")
            body = b""
            if 200 <= status < 300:
                body = self._read_body(resp, url)
            return FetchResult(url=resp.url or url, status=status, content_type=content_type, body=body)
        except requests.RequestException as e:
            raise FetchError(f"error reading {url}: {e}") from e
        finally:
            resp.close()

    def _read_body(self, resp: requests.Response, url: str) -> bytes:
        chunks: List[bytes] = []
        written = 0
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if not chunk:
                continue
            written += len(chunk)
            if written > self.settings.max_bytes:
                raise FetchError(f"{url} is larger than {self.settings.max_bytes} bytes")
            self.limiter.throttle(len(chunk))
            chunks.append(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        self.session.close()


# -------------------- Mirror --------------------


class SiteMirror:
    def __init__(self, job: MirrorJob, fetcher, state: Optional[CrawlState] = None):
        self.job = job
        self.fetcher = fetcher
        self.state = state if state is not None else CrawlState()

    @property
    def root(self) -> Path:
        return self.job.root

    def run(self) -> CrawlState:
        try:
            seed = normalize_url(self.job.url)
        except ValueError as e:
            raise ParseError(f"invalid seed URL {self.job.url!r}: {e}") from e
        # explicit stack instead of recursion; children are pushed reversed
        # so pages are still walked depth-first in document order
        stack: List[Tuple[str, str]] = [(seed, PAGE)]
        while stack:
            url, action = stack.pop()
            try:
                children = self.process(url, action)
            except MirrorError as e:
                if url == seed and action == PAGE:
                    raise
                logging.warning("error processing %s %s: %s", action, url, e)
                self.state.failures.append((url, str(e)))
                continue
            stack.extend(reversed(children))
        logging.info(
            "mirrored %d pages and %d files into %s (%d failures)",
            self.state.pages_written,
            self.state.files_written,
            self.root,
            len(self.state.failures),
        )
        return self.state

    def process(self, url: str, action: str) -> List[Tuple[str, str]]:
        if not self.state.claim(url):
            return []
        if action == PAGE:
            return self.download_page(url)
        if action in (STYLESHEET, SCRIPT):
            return self.download_document(url, CSS if action == STYLESHEET else JS)
        self.download_file(url)
        return []

    def download_page(self, url: str) -> List[Tuple[str, str]]:
        rel = url_to_relative_path(url)
        if is_excluded_path(rel, self.job.exclude):
            logging.debug("excluded page: %s", url)
            self.state.skipped.append(url)
            return []
        result = self._get(url)
        if not result.is_html:
            logging.info(
                "skipping non-HTML content at %s (Content-Type: %s)", url, result.content_type
            )
            self.state.skipped.append(url)
            return []
        text, encoding = decode_body(result.body, result.content_type)
        extraction = extract_references(text, result.url, HTML, LinkRewriter(self.job, url))
        self._write(rel, encode_body(extraction.text, encoding))
        self.state.pages_written += 1
        logging.info("saved page: %s", rel)
        return self._follow(extraction.references)

    def download_document(self, url: str, doc_type: str) -> List[Tuple[str, str]]:
        result = self._get(url)
        rel = url_to_relative_path(url)
        text, encoding = decode_body(result.body, result.content_type)
        extraction = extract_references(text, result.url, doc_type, LinkRewriter(self.job, url))
        self._write(rel, encode_body(extraction.text, encoding))
        self.state.files_written += 1
        logging.info("saved %s: %s", doc_type, rel)
        return self._follow(extraction.references)

    def download_file(self, url: str) -> Path:
        result = self._get(url)
        rel = url_to_relative_path(url)
        path = self._write(rel, result.body)
        self.state.files_written += 1
        logging.info("downloaded: %s", rel)
        return path

    def _get(self, url: str) -> FetchResult:
        result = self.fetcher.fetch(url)
        if not result.ok:
            raise FetchError(f"{url} returned status code {result.status}", status=result.status)
        return result

    def _write(self, rel: str, data: bytes) -> Path:
        path = self.root.joinpath(*rel[2:].split("/"))
        try:
            ensure_parent_dir(path)
            path.write_bytes(data)
        except OSError as e:
            raise MirrorIOError(f"cannot write {path}: {e}") from e
        return path

    def _follow(self, references: List[Reference]) -> List[Tuple[str, str]]:
        children: List[Tuple[str, str]] = []
        queued: Set[str] = set()
        for ref in references:
            if ref.url in queued or ref.url in self.state:
                continue
            action = resolve_action(ref, self.job)
            if action is None:
                continue
            queued.add(ref.url)
            children.append((ref.url, action))
        return children


def mirror_site(
    job: MirrorJob, fetcher=None, settings: Optional[Settings] = None
) -> CrawlState:
    own_fetcher = fetcher is None
    if own_fetcher:
        fetcher = Fetcher(settings or Settings())
    try:
        return SiteMirror(job, fetcher).run()
    finally:
        if own_fetcher:
            fetcher.close()


# -------------------- Downloaders --------------------


def download_file(
    url: str,
    output_path: Union[str, Path],
    settings: Settings,
    session: Optional[requests.Session] = None,
    *,
    show_progress: bool = True,
) -> Path:
    session = session if session is not None else build_session()
    output_path = Path(output_path)
    tqdm.write(f"start at {datetime.now():%Y-%m-%d %H:%M:%S}")
    try:
        resp = session.get(url, headers=browser_headers(url), timeout=settings.timeout, stream=True)
    except requests.RequestException as e:
        raise FetchError(f"error: {e}") from e
    try:
        if not 200 <= resp.status_code < 300:
            raise FetchError(
                f"error: got status {resp.status_code} {resp.reason}", status=resp.status_code
            )
        tqdm.write(f"sending request, awaiting response... status {resp.status_code} {resp.reason}")
        try:
            total = int(resp.headers.get("Content-Length") or 0)
        except ValueError:
            total = 0
        tqdm.write(f"content size: {total} [~{total / 1000 / 1000:.2f}MB]")
        tqdm.write(f"saving file to: {output_path}")
        limiter = RateLimiter(settings.rate_limit)
        if settings.rate_limit:
            tqdm.write(f"Rate limit set to: {settings.rate_limit / 1024:.2f} KB/s")
        ensure_parent_dir(output_path)
        with open(output_path, "wb") as f, tqdm(
            total=total or None,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            desc=output_path.name,
            disable=not show_progress or settings.background,
        ) as bar:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                limiter.throttle(len(chunk))
                f.write(chunk)
                bar.update(len(chunk))
    except requests.RequestException as e:
        raise FetchError(f"error: {e}") from e
    except OSError as e:
        raise MirrorIOError(f"error: {e}") from e
    finally:
        resp.close()
    tqdm.write(f"Downloaded [{url}]")
    tqdm.write(f"finished at {datetime.now():%Y-%m-%d %H:%M:%S}")
    return output_path


def read_urls_from_file(path: Union[str, Path]) -> List[str]:
    urls: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#"):
                urls.append(line)
    return urls


def download_many(
    urls: List[str],
    output_dir: Union[str, Path],
    settings: Settings,
    prefix: Optional[str] = None,
) -> List[Tuple[str, Optional[Path]]]:
    if not urls:
        return []
    output_dir = Path(output_dir)
    results: List[Optional[Path]] = [None] * len(urls)
    session = build_session()
    with ThreadPoolExecutor(max_workers=len(urls)) as pool, tqdm(
        total=len(urls), unit="file", disable=settings.background
    ) as bar:
        future_map = {}
        for i, u in enumerate(urls):
            name = f"{prefix}_{i}" if prefix else filename_from_url(u)
            fut = pool.submit(
                download_file, u, output_dir / name, settings, session, show_progress=False
            )
            future_map[fut] = i
        for fut in as_completed(future_map):
            i = future_map[fut]
            try:
                results[i] = fut.result()
            except MirrorError as e:
                logging.warning("error downloading %s: %s", urls[i], e)
            bar.update(1)
    session.close()
    return list(zip(urls, results))


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def comma_list(value: Union[str, List[str]]) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    # accept wget's "-R=jpg,gif" spelling
    value = value.lstrip("=")
    return [v.strip() for v in value.split(",") if v.strip()]


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="wget-mirror",
        description="Download files or mirror a site for offline browsing.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("url", nargs="?", help="http(s) URL")
    p.add_argument("-O", dest="output", default=None, help="save download as this file name")
    p.add_argument("-P", dest="directory", default=".", help="directory to save files in")
    p.add_argument(
        "-B", dest="background", action="store_true", help="write output to 'wget-log'"
    )
    p.add_argument(
        "-i", dest="input_file", default=None, help="file with URLs to download concurrently"
    )
    p.add_argument(
        "--rate-limit", type=str, default="", help="max download speed, e.g. 400k or 2M"
    )
    p.add_argument("--timeout", type=float, default=30.0, help="request timeout seconds")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # mirror
    p.add_argument("--mirror", action="store_true", help="mirror the site at URL")
    p.add_argument(
        "-R", "--reject", type=comma_list, default=[], help="comma separated suffixes to skip"
    )
    p.add_argument(
        "-X",
        "--exclude",
        type=comma_list,
        default=[],
        help="comma separated path prefixes to skip",
    )
    p.add_argument(
        "--convert-links", action="store_true", help="rewrite links for offline viewing"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
            for g in ("general", "download", "mirror"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            flat = {k.replace("-", "_"): v for k, v in flat.items()}
            parser.set_defaults(**flat)
    args = parser.parse_args(argv)
    args.reject = comma_list(args.reject)
    args.exclude = comma_list(args.exclude)
    try:
        args.rate_limit_bytes = parse_rate_limit(str(args.rate_limit or ""))
    except ValueError as e:
        parser.error(str(e))
    if not args.url and not args.input_file:
        parser.error("a URL or -i FILE is required")
    return args


def configure_logging(verbose: bool, stream: Optional[TextIO] = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=stream,
        force=True,
    )


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    directory = Path(os.path.expanduser(args.directory or "."))
    if args.input_file:
        try:
            urls = read_urls_from_file(args.input_file)
        except OSError as e:
            logging.error("cannot read %s: %s", args.input_file, e)
            return 1
        results = download_many(urls, directory, settings)
        failed = [u for u, p in results if p is None]
        print(f"Download finished: {len(results) - len(failed)}/{len(results)} files")
        return 1 if failed else 0

    if args.mirror:
        job = MirrorJob(
            url=args.url,
            reject=tuple(args.reject),
            exclude=tuple(args.exclude),
            convert_links=args.convert_links,
            output_dir=str(directory),
        )
        try:
            state = mirror_site(job, settings=settings)
        except MirrorError as e:
            logging.error("mirror failed: %s", e)
            return 1
        print("Mirroring complete")
        print(f"Pages saved: {state.pages_written}")
        print(f"Files saved: {state.files_written}")
        print(f"Root: {job.root}")
        return 0

    target = directory / (args.output or filename_from_url(args.url))
    try:
        download_file(args.url, target, settings, show_progress=not settings.background)
    except MirrorError as e:
        logging.error("%s", e)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    if args.url and urlparse(args.url).scheme not in {"http", "https"}:
        print("Invalid URL. Use http:// or https://")
        sys.exit(1)

    settings = Settings(
        timeout=max(1.0, args.timeout),
        rate_limit=args.rate_limit_bytes,
        background=args.background,
    )

    if settings.background:
        print("Output will be written to 'wget-log'.")
        with open("wget-log", "w", encoding="utf-8") as log_fh, redirect_stdout(log_fh):
            configure_logging(args.verbose, log_fh)
            code = run_command(args, settings)
    else:
        configure_logging(args.verbose)
        code = run_command(args, settings)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
