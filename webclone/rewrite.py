import json
import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Union
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup

from .layout import relative_link
from .records import RecordStore
from .urls import make_absolutizer, normalize_url

# -------------------- Patterns --------------------

# One pass over the three CSS reference forms: @import with url() or a bare
# string literal, then url(), which also covers custom-property values.
CSS_REF_RE = re.compile(
    r"@import\s+(?:url\(\s*(?P<iq>['\"]?)(?P<iu>[^'\")]+?)(?P=iq)\s*\)"
    r"|(?P<sq>['\"])(?P<su>[^'\"]+?)(?P=sq))"
    r"|url\(\s*(?P<q>['\"]?)(?P<u>[^'\")]+?)(?P=q)\s*\)",
    re.IGNORECASE,
)
CSS_URL_GROUPS = ("iu", "su", "u")

SRCSET_CANDIDATE_RE = re.compile(
    r"\s*(data:\S+|[^\s,]+)(?:\s+([^\s,][^,]*?))?\s*(?:,|$)"
)
META_REFRESH_RE = re.compile(r"^\s*\d+\s*;\s*url\s*=\s*(.+)$", re.IGNORECASE)
STRAY_PERCENT_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")

URL_ATTRS = [
    ("a", "href"),
    ("link", "href"),
    ("script", "src"),
    ("img", "src"),
    ("image", "xlink:href"),
    ("image", "href"),
    ("source", "src"),
    ("video", "src"),
    ("audio", "src"),
    ("track", "src"),
    ("iframe", "src"),
    ("form", "action"),
    ("embed", "src"),
    ("object", "data"),
    ("use", "href"),
    ("meta", "content"),
    ("video", "poster"),
    ("img", "srcset"),
    ("source", "srcset"),
    ("html", "manifest"),
]

# <meta content> is only a URL for these names/properties.
URL_META_KEYS = {
    "og:image",
    "og:image:url",
    "og:image:secure_url",
    "og:video",
    "og:video:url",
    "og:video:secure_url",
    "og:audio",
    "og:audio:url",
    "twitter:image",
    "twitter:image:src",
    "twitter:player:stream",
    "msapplication-tileimage",
    "thumbnailurl",
}

# Everything that may appear unescaped in a rewritten reference.
ATTR_URL_SAFE = "/:?@!$&()*+,;=-._~%[]"

Relativizer = Callable[[str], str]
Absolutizer = Callable[[str], Optional[str]]

# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        try:
            return urljoin(fallback, tag["href"].strip())
        except ValueError:
            return fallback
    return fallback


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="html")


def safe_attr_url(url: str) -> str:
    if not url or url.startswith("data:"):
        return url
    return quote(STRAY_PERCENT_RE.sub("%25", url), safe=ATTR_URL_SAFE)


# -------------------- Relativizer --------------------


def make_relativizer(
    source_path: Union[str, Path],
    records: RecordStore,
    video_map: Optional[Mapping[str, Path]] = None,
) -> Relativizer:
    def to_relative(target_url: str) -> str:
        if target_url.startswith("data:"):
            return target_url
        norm = normalize_url(target_url)
        if not norm:
            return target_url
        if video_map:
            video_path = video_map.get(norm)
            if video_path:
                return relative_link(source_path, video_path)
        rec = records.get(norm)
        if rec is None or not rec.local_path:
            return target_url
        try:
            return relative_link(source_path, rec.local_path)
        except ValueError as e:
            logging.warning("relative path error from=%s to=%s: %s", source_path, target_url, e)
            return target_url

    return to_relative


# -------------------- CSS --------------------


def _css_ref(m: re.Match) -> Optional[str]:
    for g in CSS_URL_GROUPS:
        if m.group(g):
            return g
    return None


def rewrite_css_urls(css_text: str, absolutize: Absolutizer, to_relative: Relativizer) -> str:
    def repl(m: re.Match) -> str:
        g = _css_ref(m)
        if g is None:
            return m.group(0)
        u = m.group(g).strip()
        if not u or u.startswith("data:"):
            return m.group(0)
        absu = absolutize(u)
        if not absu:
            return m.group(0)
        new = safe_attr_url(to_relative(absu))
        start = m.start(g) - m.start(0)
        end = m.end(g) - m.start(0)
        whole = m.group(0)
        return whole[:start] + new + whole[end:]

    return CSS_REF_RE.sub(repl, css_text)


def parse_css_for_urls(css_text: str, base_url: str) -> Set[str]:
    absolutize = make_absolutizer(base_url)
    urls: Set[str] = set()
    for m in CSS_REF_RE.finditer(css_text):
        g = _css_ref(m)
        if g is None:
            continue
        absu = absolutize(m.group(g).strip())
        if absu:
            urls.add(absu)
    return urls


# -------------------- srcset --------------------


def process_srcset(value: str, absolutize: Absolutizer, to_relative: Relativizer) -> str:
    parts: List[str] = []
    for m in SRCSET_CANDIDATE_RE.finditer(value):
        if not m.group(0).strip():
            continue
        u = m.group(1)
        desc = (m.group(2) or "").strip()
        absu = None if u.startswith("data:") else absolutize(u)
        if not absu:
            parts.append(f"{u} {desc}" if desc else u)
            continue
        rel = safe_attr_url(to_relative(absu))
        parts.append(f"{rel} {desc}" if desc else rel)
    return ", ".join(parts) if parts else value


# -------------------- Manifest --------------------


def rewrite_manifest(text: str, absolutize: Absolutizer, to_relative: Relativizer) -> str:
    manifest = json.loads(text)
    if not isinstance(manifest, dict):
        return text

    def rewrite(u):
        if not u or not isinstance(u, str):
            return u
        absu = absolutize(u)
        return to_relative(absu) if absu else u

    for key in ("icons", "screenshots"):
        entries = manifest.get(key)
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, dict) and entry.get("src"):
                    entry["src"] = rewrite(entry["src"])
    if manifest.get("start_url"):
        manifest["start_url"] = rewrite(manifest["start_url"])
    return json.dumps(manifest, indent=2)


# -------------------- HTML --------------------


def _is_url_meta(tag) -> bool:
    if tag.get("http-equiv"):
        return False
    key = tag.get("property") or tag.get("name") or tag.get("itemprop") or ""
    return key.strip().lower() in URL_META_KEYS


def rewrite_html(
    html: str,
    page_url: str,
    page_file: Union[str, Path],
    records: RecordStore,
    video_map: Optional[Dict[str, Path]] = None,
    rewrite_css: bool = True,
) -> str:
    soup = bs4_parse(html)
    base = effective_base_url(soup, page_url)
    for base_tag in soup.find_all("base"):
        base_tag.decompose()

    absolutize = make_absolutizer(base)
    to_relative = make_relativizer(page_file, records, video_map)

    for tag_name, attr in URL_ATTRS:
        for tag in soup.find_all(tag_name):
            value = tag.get(attr)
            if not isinstance(value, str):
                continue
            value = value.strip()
            if not value or value.startswith(("data:", "#")):
                continue
            if tag_name == "meta" and not _is_url_meta(tag):
                continue
            if attr == "srcset":
                tag[attr] = process_srcset(value, absolutize, to_relative)
                continue
            absu = absolutize(value)
            if not absu:
                continue
            frag = value.split("#", 1)[1] if "#" in value else ""
            rel = safe_attr_url(to_relative(absu))
            tag[attr] = f"{rel}#{frag}" if frag else rel

    if rewrite_css:
        for tag in soup.select("[style]"):
            css = tag.get("style")
            if not css:
                continue
            new_css = rewrite_css_urls(css, absolutize, to_relative)
            if new_css != css:
                tag["style"] = new_css
        for style in soup.find_all("style"):
            text = style.get_text()
            if not text:
                continue
            new_text = rewrite_css_urls(text, absolutize, to_relative)
            if new_text != text:
                style.string = new_text

    for tag in soup.find_all("meta", attrs={"http-equiv": re.compile("^refresh$", re.I)}):
        m = META_REFRESH_RE.match(tag.get("content") or "")
        if not m:
            continue
        absu = absolutize(m.group(1).strip().strip("'\""))
        if absu:
            tag["content"] = f"0; url={safe_attr_url(to_relative(absu))}"

    return serialize_html(soup)
