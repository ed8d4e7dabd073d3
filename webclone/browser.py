import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from playwright.async_api import Browser, BrowserContext, Page, Playwright
from playwright.async_api import Error as PlaywrightError

from .cookies import save_cookies, to_playwright_cookies
from .errors import StartupError
from .settings import Settings

# -------------------- Browser --------------------

LAUNCH_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-web-security"]

BROWSER_LOST_MARKERS = (
    "Target closed",
    "Session closed",
    "Browser has been closed",
    "Target page, context or browser has been closed",
    "Connection closed",
)

DISCOVER_JS = r"""
() => {
  const links = new Map();
  const priority = { nav: 3, header: 2, body: 1, footer: 0 };
  const add = (raw, context = 'body') => {
    if (!raw || /^(javascript:|data:|mailto:|tel:)/i.test(raw)) return;
    let url;
    try {
      url = new URL(raw, document.baseURI).toString().split('#')[0];
    } catch (e) {
      return;
    }
    const prev = links.get(url);
    if (!prev || priority[context] > priority[prev]) links.set(url, context);
  };

  for (const el of document.querySelectorAll('a[href]')) {
    let context = 'body';
    if (el.closest('nav')) context = 'nav';
    else if (el.closest('header')) context = 'header';
    else if (el.closest('footer')) context = 'footer';
    add(el.getAttribute('href'), context);
  }
  for (const el of document.querySelectorAll('[src], [action], object[data], html[manifest], [poster], link[href]')) {
    for (const attr of ['src', 'action', 'data', 'manifest', 'poster']) add(el.getAttribute(attr));
    if (el.tagName === 'LINK') add(el.getAttribute('href'));
  }
  for (const el of document.querySelectorAll('[srcset]')) {
    for (const part of (el.getAttribute('srcset') || '').split(',')) {
      const u = part.trim().split(/\s+/)[0];
      if (u) add(u);
    }
  }
  const cssUrls = (text) => {
    const re = /url\(\s*(['"]?)([^'")]+?)\1\s*\)/gi;
    let m;
    while ((m = re.exec(text || '')) !== null) if (m[2]) add(m[2]);
  };
  document.querySelectorAll('[style]').forEach(el => cssUrls(el.getAttribute('style')));
  document.querySelectorAll('style').forEach(el => cssUrls(el.textContent));

  return Array.from(links, ([url, context]) => ({ url, context }));
}
"""

SCROLL_NEEDED_JS = "() => document.scrollingElement.scrollHeight > window.innerHeight"

AUTOSCROLL_JS = """
({ timeoutMs, stableChecks, intervalMs }) => new Promise((resolve) => {
  let lastHeight = -1;
  let stable = 0;
  const timer = setInterval(() => {
    const height = document.body.scrollHeight;
    if (height === lastHeight) {
      stable++;
    } else {
      stable = 0;
      lastHeight = height;
    }
    if (stable >= stableChecks) {
      clearInterval(timer);
      resolve();
    } else {
      window.scrollTo(0, height);
    }
  }, intervalMs);
  setTimeout(() => { clearInterval(timer); resolve(); }, timeoutMs);
})
"""

FETCH_ASSETS_JS = """
({ urls, timeoutMs }) => Promise.all(urls.map(url => new Promise((resolve) => {
  const timer = setTimeout(() => resolve(null), timeoutMs);
  fetch(url)
    .then(r => r.arrayBuffer())
    .catch(() => null)
    .finally(() => { clearTimeout(timer); resolve(null); });
})))
"""


def is_browser_lost(err: BaseException) -> bool:
    msg = str(err)
    return any(m in msg for m in BROWSER_LOST_MARKERS)


async def launch_browser(pw: Playwright, settings: Settings, headless: Optional[bool] = None) -> Browser:
    if headless is None:
        headless = not settings.show_browser
    try:
        return await pw.chromium.launch(headless=headless, args=LAUNCH_ARGS)
    except PlaywrightError as e:
        raise StartupError(
            f"failed to launch browser ({e}); run: playwright install chromium"
        )


async def open_page(
    browser: Browser, settings: Settings, cookies: Optional[List[Dict[str, Any]]] = None
) -> Tuple[BrowserContext, Page]:
    """A fresh context per page, so nothing is served from a warm cache."""
    context = await browser.new_context(user_agent=settings.user_agent, ignore_https_errors=True)
    try:
        if cookies:
            await context.add_cookies(to_playwright_cookies(cookies))
        page = await context.new_page()
        page.set_default_navigation_timeout(settings.nav_timeout_ms)
    except BaseException:
        await context.close()
        raise
    return context, page


async def auto_scroll(page: Page, settings: Settings) -> None:
    try:
        if not await page.evaluate(SCROLL_NEEDED_JS):
            return
        await page.evaluate(
            AUTOSCROLL_JS,
            {
                "timeoutMs": settings.scroll_timeout_ms,
                "stableChecks": settings.scroll_stability_checks,
                "intervalMs": settings.scroll_check_interval_ms,
            },
        )
    except PlaywrightError as e:
        if is_browser_lost(e):
            raise
        logging.warning("autoscroll failed url=%s, page might have navigated away: %s", page.url, e)


async def discover_links(page: Page) -> List[Dict[str, str]]:
    return await page.evaluate(DISCOVER_JS)


async def fetch_in_page(page: Page, urls: List[str], timeout_ms: int) -> None:
    if not urls:
        return
    logging.info("fetching additional discovered assets count=%d url=%s", len(urls), page.url)
    await page.evaluate(FETCH_ASSETS_JS, {"urls": urls, "timeoutMs": timeout_ms})


# -------------------- Interactive login --------------------


async def interactive_login(pw: Playwright, settings: Settings) -> List[Dict[str, Any]]:
    logging.info("starting interactive login session")
    browser = await launch_browser(pw, settings, headless=False)
    try:
        context = await browser.new_context(user_agent=settings.user_agent)
        page = await context.new_page()
        await page.goto(settings.start_urls[0], wait_until="domcontentloaded")
        logging.info("log in to the website in the browser window")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, input, "After logging in, press [Enter] here to continue..."
        )
        logging.info("capturing session cookies")
        cookies = [dict(c) for c in await context.cookies()]
    except PlaywrightError as e:
        raise StartupError(f"interactive login failed: {e}")
    finally:
        await browser.close()

    if settings.save_cookies_path:
        try:
            save_cookies(settings.save_cookies_path, cookies)
        except OSError as e:
            logging.error("failed to save cookies to %s: %s", settings.save_cookies_path, e)
    return cookies
