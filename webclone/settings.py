from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError

# -------------------- Config --------------------

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
PERMANENT_ERROR_STATUS_CODES = frozenset({401, 403, 404})

CRAWL_SCOPES = ("same-domain", "subdomains", "cross-domains")
VIDEO_MODES = ("auto", "all", "none")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

CONFIG_GROUPS = ("crawl", "video", "timeouts", "session", "general")

# -------------------- Settings --------------------


@dataclass
class Settings:
    start_urls: List[str] = field(default_factory=list)
    out_dir: str = "archive"
    user_agent: str = DEFAULT_USER_AGENT
    log_level: str = "info"

    # Session
    cookies_path: Optional[str] = None
    interactive_login: bool = False
    save_cookies_path: Optional[str] = None

    # Crawl
    max_depth: int = 5
    max_pages: int = 600
    concurrency: int = 3
    max_consecutive_failures: int = 10
    crawl_scope: str = "cross-domains"
    follow_iframes: bool = True
    save_failed_responses: bool = False
    rewrite_css: bool = True
    show_browser: bool = False
    io_workers: int = 16

    # Video
    videos: str = "auto"
    video_resolution: Optional[int] = None
    yt_dlp_path: str = "yt-dlp"

    # Failsafes
    global_timeout: float = 0.0  # minutes
    stall_timeout: float = 5.0  # minutes
    asset_timeout: float = 30.0  # seconds

    # Internal
    max_retries: int = 3
    video_max_retries: int = 2
    random_delay_ms: Tuple[int, int] = (200, 1800)
    wait_until: str = "domcontentloaded"
    nav_timeout_ms: int = 60000
    video_download_timeout: float = 300.0
    default_backoff_ms: Tuple[int, int] = (5000, 10000)
    scroll_timeout_ms: int = 15000
    scroll_stability_checks: int = 3
    scroll_check_interval_ms: int = 250
    monitor_interval: float = 5.0
    idle_wait: float = 0.25
    video_drain_timeout: float = 30.0

    @property
    def global_timeout_s(self) -> float:
        return self.global_timeout * 60.0

    @property
    def stall_timeout_s(self) -> float:
        return self.stall_timeout * 60.0

    @property
    def out_root(self) -> Path:
        return Path(self.out_dir).resolve()

    def summary(self) -> Dict[str, Any]:
        return {
            "start_urls": self.start_urls,
            "out_dir": str(self.out_root),
            "max_depth": self.max_depth,
            "max_pages": self.max_pages,
            "concurrency": self.concurrency,
            "crawl_scope": self.crawl_scope,
            "videos": self.videos,
            "video_resolution": self.video_resolution,
            "cookies": self.cookies_path,
            "interactive_login": self.interactive_login,
        }


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            import tomli as tomllib  # backport
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"invalid YAML in {p}: {e}")
            if not isinstance(data, dict):
                raise ConfigError("Top-level YAML must be a mapping")
            return data
    else:
        raise ConfigError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    flat = {k: v for k, v in cfg.items() if k not in CONFIG_GROUPS}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    # config files use the same spelling as the long CLI flags
    return {k.replace("-", "_"): v for k, v in flat.items()}
