import argparse
import logging
import os
import sys
from typing import List, Optional
from urllib.parse import urlparse

from .crawler import run_crawler
from .errors import ConfigError
from .settings import (
    CRAWL_SCOPES,
    DEFAULT_USER_AGENT,
    LOG_LEVELS,
    VIDEO_MODES,
    Settings,
    flatten_config,
    load_config_file,
)

# -------------------- CLI --------------------

# config keys spelled like the flags whose dest differs
CONFIG_ALIASES = {"cookies": "cookies_path", "save_cookies": "save_cookies_path"}


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="webclone",
        description="Archive dynamically rendered websites into a browsable offline copy.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("start_urls", nargs="+", metavar="url", help="http(s) start URL(s)")
    p.add_argument("-o", "--out-dir", type=str, default="archive", help="output directory")
    p.add_argument("--user-agent", type=str, default=DEFAULT_USER_AGENT, help="browser user agent")
    p.add_argument(
        "--log-level", type=str, choices=LOG_LEVELS, default="info", help="logging level"
    )

    # session
    p.add_argument(
        "--cookies", dest="cookies_path", type=str, default=None, help="cookies JSON file"
    )
    p.add_argument(
        "--interactive-login",
        action="store_true",
        help="open a browser to log in manually before crawling",
    )
    p.add_argument(
        "--save-cookies",
        dest="save_cookies_path",
        type=str,
        default=None,
        help="where to save cookies captured by --interactive-login",
    )

    # crawl
    p.add_argument("--max-depth", type=int, default=5, help="max link depth")
    p.add_argument("--max-pages", type=int, default=600, help="max HTML pages")
    p.add_argument("--concurrency", type=int, default=3, help="concurrent page workers")
    p.add_argument(
        "--max-consecutive-failures",
        type=int,
        default=10,
        help="abort after this many failed pages in a row",
    )
    p.add_argument(
        "--crawl-scope", type=str, choices=CRAWL_SCOPES, default="cross-domains", help="domain scope"
    )
    p.add_argument(
        "--no-follow-iframes",
        dest="follow_iframes",
        action="store_false",
        help="do not crawl documents loaded in frames",
    )
    p.add_argument(
        "--save-failed-responses",
        action="store_true",
        help="also archive non-2xx asset responses",
    )
    p.add_argument(
        "--no-rewrite-css", dest="rewrite_css", action="store_false", help="keep stylesheets as fetched"
    )
    p.add_argument("--show-browser", action="store_true", help="run the browser headful")
    p.add_argument("--io-workers", type=int, default=16, help="file writer threads")

    # video
    p.add_argument(
        "--videos", type=str, choices=VIDEO_MODES, default="auto", help="video download mode"
    )
    p.add_argument(
        "--video-resolution", type=int, default=None, help="max video height, e.g. 720"
    )
    p.add_argument("--yt-dlp-path", type=str, default="yt-dlp", help="yt-dlp executable")

    # timeouts
    p.add_argument(
        "--global-timeout", type=float, default=0.0, help="minutes before a forced stop, 0 = off"
    )
    p.add_argument(
        "--stall-timeout", type=float, default=5.0, help="minutes without progress before a stop"
    )
    p.add_argument(
        "--asset-timeout", type=float, default=30.0, help="seconds to buffer one asset"
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", type=str, default=None)
    preliminary, _ = pre.parse_known_args(argv)
    if preliminary.config:
        try:
            cfg = load_config_file(preliminary.config)
        except (OSError, ValueError) as e:
            raise ConfigError(f"failed to read config {preliminary.config}: {e}")
        flat = {CONFIG_ALIASES.get(k, k): v for k, v in flatten_config(cfg).items()}
        flat.pop("start_urls", None)
        known = {a.dest for a in parser._actions}
        unknown = sorted(k for k in flat if k not in known)
        if unknown:
            raise ConfigError(f"unknown config keys: {', '.join(unknown)}")
        parser.set_defaults(**flat)
    return parser.parse_args(argv)


def validate_args(args: argparse.Namespace) -> List[str]:
    errors = []
    for u in args.start_urls:
        if urlparse(u).scheme not in {"http", "https"}:
            errors.append(f"invalid start URL (use http:// or https://): {u}")
    minimums = [
        ("max_depth", 0),
        ("max_pages", 1),
        ("concurrency", 1),
        ("max_consecutive_failures", 1),
        ("io_workers", 1),
        ("global_timeout", 0),
        ("stall_timeout", 0),
        ("asset_timeout", 1),
    ]
    for name, minimum in minimums:
        if getattr(args, name) < minimum:
            errors.append(f"--{name.replace('_', '-')} must be >= {minimum}")
    if args.video_resolution is not None and args.video_resolution < 1:
        errors.append("--video-resolution must be >= 1")
    if args.cookies_path and not os.path.isfile(args.cookies_path):
        errors.append(f"cookie file not found: {args.cookies_path}")
    if args.save_cookies_path and not args.interactive_login:
        errors.append("--save-cookies requires --interactive-login")
    return errors


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        start_urls=list(args.start_urls),
        out_dir=args.out_dir,
        user_agent=args.user_agent,
        log_level=args.log_level,
        cookies_path=args.cookies_path,
        interactive_login=args.interactive_login,
        save_cookies_path=args.save_cookies_path,
        max_depth=args.max_depth,
        max_pages=args.max_pages,
        concurrency=args.concurrency,
        max_consecutive_failures=args.max_consecutive_failures,
        crawl_scope=args.crawl_scope,
        follow_iframes=args.follow_iframes,
        save_failed_responses=args.save_failed_responses,
        rewrite_css=args.rewrite_css,
        show_browser=args.show_browser,
        io_workers=args.io_workers,
        videos=args.videos,
        video_resolution=args.video_resolution,
        yt_dlp_path=args.yt_dlp_path,
        global_timeout=args.global_timeout,
        stall_timeout=args.stall_timeout,
        asset_timeout=args.asset_timeout,
    )


def main(argv: Optional[List[str]] = None) -> None:
    try:
        args = parse_args(argv)
    except ConfigError as e:
        print(f"webclone: error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(levelname)s: %(message)s",
    )

    errors = validate_args(args)
    if errors:
        for e in errors:
            logging.error("%s", e)
        sys.exit(1)

    sys.exit(run_crawler(settings_from_args(args)))


if __name__ == "__main__":
    main()
