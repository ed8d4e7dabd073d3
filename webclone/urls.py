import logging
import posixpath
import re
from typing import Callable, Iterable, Optional, Set
from urllib.parse import quote, unquote, urljoin, urlsplit, urlunsplit

# -------------------- Patterns --------------------

INVISIBLE_CHARS_RE = re.compile("[\u200b-\u200d\ufeff]")
WS_RE = re.compile(r"\s+")
NON_FETCHABLE_RE = re.compile(r"^(javascript:|data:|mailto:|tel:)", re.IGNORECASE)

HTML_LIKE_EXTS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".cfm", ".xhtml"}

DIRECT_VIDEO_URL_PATTERNS = [
    re.compile(r"^https?://(www\.)?youtube\.com/watch\?v="),
    re.compile(r"^https?://(www\.)?youtube\.com/shorts/"),
    re.compile(r"^https?://youtu\.be/"),
    re.compile(r"^https?://vimeo\.com/\d+"),
    re.compile(r"^https?://(www\.)?dailymotion\.com/video/"),
    re.compile(r"^https?://(www\.)?tiktok\.com/.*/video/"),
    re.compile(r"^https?://(www\.)?facebook\.com/(watch|stories|reel)/"),
    re.compile(r"^https?://(www\.)?bilibili\.com/video/(av|BV)"),
    re.compile(r"^https?://(www\.)?bilibili\.tv/[a-z]{2}/(play|video)/\d+"),
]

LISTING_PATH_MARKERS = ("/archive", "/tags/", "/category/")

# Path characters left untouched when the decoded path is encoded again.
PATH_SAFE = "/!$&'()*+,;=:@-._~"

DEFAULT_PORTS = {"http": 80, "https": 443}

# -------------------- Normalize --------------------


def normalize_url(url: Optional[str]) -> str:
    """Canonical form of an http(s) URL, or "" when the input is unusable.

    The fragment is dropped, the path is decoded and re-encoded, a single
    trailing slash is removed (except for the root path) and invisible
    zero-width characters are stripped.
    """
    if not url or not isinstance(url, str):
        return ""
    raw = INVISIBLE_CHARS_RE.sub("", WS_RE.sub(" ", url.strip()))
    try:
        p = urlsplit(raw)
        scheme = p.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            return ""
        host = p.hostname
        if not host:
            return ""
        port = p.port
    except ValueError:
        return ""

    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if p.username is not None:
        userinfo = p.username
        if p.password is not None:
            userinfo = f"{userinfo}:{p.password}"
        netloc = f"{userinfo}@{netloc}"

    path = quote(unquote(p.path), safe=PATH_SAFE) or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]
    return urlunsplit((scheme, netloc, path, p.query, ""))


def make_absolutizer(base_url: str) -> Callable[[str], Optional[str]]:
    def absolutize(ref: str) -> Optional[str]:
        if not ref:
            return None
        ref = ref.strip()
        if not ref or NON_FETCHABLE_RE.match(ref):
            return None
        try:
            absu = urljoin(base_url, ref)
        except ValueError:
            return None
        return absu.split("#", 1)[0]

    return absolutize


def url_extension(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return posixpath.splitext(unquote(path))[1].lower()


def looks_navigable(url: str) -> bool:
    try:
        if not urlsplit(url).scheme:
            return False
    except ValueError:
        return False
    ext = url_extension(url)
    return not ext or ext in HTML_LIKE_EXTS


def is_direct_video_url(url: str) -> bool:
    if not url:
        return False
    return any(p.search(url) for p in DIRECT_VIDEO_URL_PATTERNS)


# -------------------- Scope --------------------


def get_base_domain(hostname: str) -> str:
    # Last two labels only; multi-label public suffixes such as co.uk collapse.
    parts = hostname.split(".")
    if len(parts) <= 2:
        return hostname
    return ".".join(parts[-2:])


class ScopeClassifier:
    def __init__(self, policy: str = "cross-domains"):
        self.policy = policy
        self.initial_hosts: Set[str] = set()
        self.initial_base_domains: Set[str] = set()

    def add_start_urls(self, urls: Iterable[str]) -> None:
        for u in urls:
            try:
                host = urlsplit(u).hostname
            except ValueError:
                host = None
            if not host:
                logging.warning("could not parse start URL for scope control: %s", u)
                continue
            self.initial_hosts.add(host)
            self.initial_base_domains.add(get_base_domain(host))

    def in_scope(self, url: str) -> bool:
        if self.policy == "cross-domains":
            return True
        try:
            host = urlsplit(url).hostname
        except ValueError:
            host = None
        if not host:
            logging.warning("could not parse URL for scope check: %s", url)
            return False
        if self.policy == "same-domain":
            return host in self.initial_hosts
        if self.policy == "subdomains":
            return get_base_domain(host) in self.initial_base_domains
        return False


# -------------------- Link scoring --------------------

CONTEXT_PRIORITY = {"nav": 3, "header": 2, "body": 1, "footer": 0}


def context_rank(context: Optional[str]) -> int:
    return CONTEXT_PRIORITY.get(context or "footer", 0)


def link_score(url: str, context: Optional[str] = "body") -> float:
    if context in ("nav", "header"):
        return 10
    if context == "footer":
        return 1
    try:
        p = urlsplit(url)
    except ValueError:
        return 5
    path = p.path.lower()
    if any(m in path for m in LISTING_PATH_MARKERS) or "page=" in p.query:
        return 2
    depth = len([seg for seg in path.split("/") if seg])
    if depth <= 1:
        return 8
    if depth > 4:
        return 3
    return 5
