import json
import logging
import tempfile
from http.cookiejar import Cookie, MozillaCookieJar
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import StartupError

# -------------------- Auth / session --------------------

SAME_SITE_VALUES = {"strict": "Strict", "lax": "Lax", "none": "None"}


def load_cookies(path: Union[str, Path]) -> List[Dict[str, Any]]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise StartupError(f"cookie file not found: {p}")
    except (OSError, ValueError) as e:
        raise StartupError(f"failed to read or parse cookie file {p}: {e}")
    if not isinstance(data, list):
        raise StartupError(f"cookie file must hold a JSON array: {p}")
    cookies = [c for c in data if isinstance(c, dict) and c.get("name") and c.get("domain")]
    logging.info("loaded %d cookies for session sharing: %s", len(cookies), p)
    return cookies


def save_cookies(path: Union[str, Path], cookies: List[Dict[str, Any]]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cookies, indent=2), encoding="utf-8")
    logging.info("cookies saved to: %s", p)


def to_playwright_cookies(cookies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for c in cookies:
        cookie: Dict[str, Any] = {
            "name": str(c["name"]),
            "value": str(c.get("value", "")),
            "domain": str(c["domain"]),
            "path": str(c.get("path") or "/"),
            "httpOnly": bool(c.get("httpOnly", False)),
            "secure": bool(c.get("secure", False)),
        }
        expires = c.get("expires")
        if isinstance(expires, (int, float)) and expires > 0:
            cookie["expires"] = float(expires)
        same_site = SAME_SITE_VALUES.get(str(c.get("sameSite", "")).lower())
        if same_site:
            cookie["sameSite"] = same_site
        out.append(cookie)
    return out


def cookie_header(cookies: List[Dict[str, Any]]) -> str:
    return "; ".join(f"{c['name']}={c.get('value', '')}" for c in cookies if c.get("name"))


def build_cookie_jar(cookies: List[Dict[str, Any]]) -> MozillaCookieJar:
    jar = MozillaCookieJar()
    for c in cookies:
        domain = str(c["domain"])
        if not domain.startswith("."):
            domain = "." + domain
        expires = c.get("expires")
        expires_int: Optional[int] = None
        if isinstance(expires, (int, float)) and expires > 0:
            expires_int = int(expires)
        rest = {"HttpOnly": ""} if c.get("httpOnly") else {}
        jar.set_cookie(
            Cookie(
                version=0,
                name=str(c["name"]),
                value=str(c.get("value", "")),
                port=None,
                port_specified=False,
                domain=domain,
                domain_specified=True,
                domain_initial_dot=True,
                path=str(c.get("path") or "/"),
                path_specified=True,
                secure=bool(c.get("secure", False)),
                expires=expires_int,
                discard=expires_int is None,
                comment=None,
                comment_url=None,
                rest=rest,
            )
        )
    return jar


def write_netscape_cookie_file(cookies: List[Dict[str, Any]]) -> Path:
    """Write cookies to a fresh tab-separated cookie-jar file; caller deletes it."""
    fh = tempfile.NamedTemporaryFile(prefix="webclone-cookies-", suffix=".txt", delete=False)
    fh.close()
    path = Path(fh.name)
    build_cookie_jar(cookies).save(str(path), ignore_discard=True, ignore_expires=True)
    return path
