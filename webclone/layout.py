import hashlib
import logging
import mimetypes
import os
import posixpath
import re
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import parse_qs, unquote, urlsplit

# -------------------- Output layout --------------------

MAX_PATH_LENGTH = 255
MAX_SEGMENT_LENGTH = 100

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
WS_RE = re.compile(r"\s+")
EXT_HINT_RE = re.compile(r"^[a-z0-9]+$")

EXT_MAP = {
    "text/html": ".html",
    "text/plain": ".txt",
    "text/css": ".css",
    "text/javascript": ".js",
    "application/javascript": ".js",
    "application/x-javascript": ".js",
    "application/json": ".json",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/x-icon": ".ico",
    "image/avif": ".avif",
    "image/jp2": ".jp2",
    "image/jxr": ".jxr",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "font/ttf": ".ttf",
    "font/otf": ".otf",
    "font/woff": ".woff",
    "font/woff2": ".woff2",
    "application/manifest+json": ".webmanifest",
    "application/wasm": ".wasm",
    "application/xml": ".xml",
    "application/xhtml+xml": ".xhtml",
    "application/ld+json": ".jsonld",
    "application/graphql": ".graphql",
    "application/rss+xml": ".rss",
    "application/atom+xml": ".atom",
    "text/markdown": ".md",
    "application/x-yaml": ".yaml",
    "text/yaml": ".yaml",
    "text/xml": ".xml",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "video/mp4": ".mp4",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "video/webm": ".webm",
    "audio/webm": ".webm",
    "video/ogg": ".ogg",
    "audio/ogg": ".ogg",
    "application/ogg": ".ogg",
    "application/zip": ".zip",
    "application/gzip": ".gz",
    "application/x-tar": ".tar",
    "application/x-7z-compressed": ".7z",
    "application/x-rar-compressed": ".rar",
    "application/x-shockwave-flash": ".swf",
    "text/x-python": ".py",
    "text/x-java-source": ".java",
    "text/x-c++src": ".cpp",
    "application/x-sh": ".sh",
    "text/x-ini": ".ini",
}


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def sanitize_segment(name: str, max_length: int = MAX_SEGMENT_LENGTH) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = WS_RE.sub(" ", name)
    if name in (".", ".."):
        name = "_" * len(name)
    return name[:max_length]


def infer_extension(url: str, content_type: Optional[str] = "") -> str:
    ct = (content_type or "").split(";")[0].strip().lower()
    if ct in EXT_MAP:
        return EXT_MAP[ct]
    try:
        p = urlsplit(url)
    except ValueError:
        return ""
    ext = posixpath.splitext(unquote(p.path))[1]
    if ext and len(ext) <= 10:
        return ext
    query = parse_qs(p.query)
    for hint in ("format", "ext", "type"):
        val = (query.get(hint) or [""])[0].lower()
        if val and len(val) <= 6 and EXT_HINT_RE.match(val):
            return "." + val
    if ct and ct != "application/octet-stream":
        return mimetypes.guess_extension(ct) or ""
    return ""


def url_to_file_path(
    root_dir: Union[str, Path],
    url: str,
    content_type: Optional[str] = "",
    is_page: bool = False,
    force_ext: str = "",
    max_path_length: int = MAX_PATH_LENGTH,
) -> Path:
    p = urlsplit(url)
    host_dir = Path(root_dir) / sanitize_segment(p.netloc or "host")

    segments: List[str] = [
        sanitize_segment(unquote(s)) for s in p.path.split("/") if s
    ]
    last_ext = os.path.splitext(segments[-1])[1] if segments else ""
    path_has_ext = last_ext != ""
    ext = force_ext or infer_extension(url, content_type)

    if is_page:
        if not path_has_ext:
            segments.append("index.html")
        else:
            segments[-1] = os.path.splitext(segments[-1])[0] + ".html"
        ext = ".html"
    else:
        if not path_has_ext and not ext:
            base = segments[-1] if segments else "asset"
            stamped = f"{base}-{md5_hex(p.query or p.path)[:8]}"
            if segments:
                segments[-1] = stamped
            else:
                segments.append(stamped)
        if ext and (not path_has_ext or ext != os.path.splitext(segments[-1])[1]):
            if not segments:
                segments.append("asset")
            segments[-1] += ext

    if p.query:
        query_key = md5_hex("?" + p.query)[:6]
        last = segments[-1] if segments else "index"
        base, file_ext = os.path.splitext(last)
        stamped = f"{base}~{query_key}{file_ext}"
        if segments:
            segments[-1] = stamped
        else:
            segments.append(stamped)

    final_path = host_dir.joinpath(*segments)
    if len(str(final_path)) > max_path_length:
        logging.warning(
            "path exceeds max length (%d), falling back to hashed path: %s",
            len(str(final_path)),
            url,
        )
        original = p.path + ("?" + p.query if p.query else "")
        final_path = host_dir / (md5_hex(original) + ext)
    return final_path


def relative_link(from_file: Union[str, Path], to_file: Union[str, Path]) -> str:
    from_dir = os.path.dirname(os.path.abspath(from_file))
    rel = os.path.relpath(os.path.abspath(to_file), from_dir).replace("\\", "/")
    if not rel or rel == ".":
        return "./"
    if not rel.startswith(("./", "../")):
        rel = "./" + rel
    return rel
