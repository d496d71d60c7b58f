"""Robots.txt trap paths and the pages served to crawlers that ignore them."""

import html
import random
import secrets
from base64 import b64encode

from aiohttp import web

from nkshield.honeytokens import defense_headers, entropy_headers

ROBOTS_TRAP_PREFIXES = (
    "/admin",
    "/backup",
    "/config",
    "/dashboard",
    "/internal",
    "/debug",
    "/staging",
    "/private",
    "/data",
    "/logs",
)

DENIED_PAGE_NOISE_HEADERS = 50

NAV_LINKS = (
    "/admin/login", "/admin/settings", "/admin/users", "/admin/export",
    "/dashboard/", "/dashboard/analytics", "/dashboard/reports",
    "/backup/latest", "/backup/database", "/backup/files",
    "/config/app", "/config/database", "/config/security",
    "/internal/docs", "/internal/api", "/internal/status",
    "/debug/status", "/debug/logs", "/debug/traces",
    "/staging/preview", "/staging/build",
    "/private/data", "/private/keys",
    "/data/export", "/data/users",
    "/logs/access", "/logs/error",
)

SITEMAP_TRAP_PATHS = (
    "/admin/backup",
    "/admin/export",
    "/data/export",
    "/config/env",
    "/config/database",
    "/backup/latest",
    "/debug/logs",
    "/internal/api",
    "/private/keys",
    "/logs/access",
)

AI_CRAWLERS = ("GPTBot", "ChatGPT-User", "CCBot", "anthropic-ai", "Google-Extended")


def is_robots_trap(path: str) -> bool:
    """True for paths under a Disallow prefix published in robots.txt."""
    lowered = path.lower().rstrip("/")
    return any(lowered == prefix or lowered.startswith(prefix + "/") for prefix in ROBOTS_TRAP_PREFIXES)


def render_robots_txt(site_url: str) -> str:
    lines = ["User-agent: *", "Allow: /"]
    lines.extend(f"Disallow: {prefix}/" for prefix in ROBOTS_TRAP_PREFIXES)
    for crawler in AI_CRAWLERS:
        lines.extend(["", f"User-agent: {crawler}", "Disallow: /"])
    lines.extend(["", f"Sitemap: {site_url.rstrip('/')}/sitemap-extended.xml", ""])
    return "\n".join(lines)


def render_trap_sitemap(site_url: str, lastmod: str) -> str:
    base = site_url.rstrip("/")
    entries = "\n".join(
        f"  <url>\n    <loc>{html.escape(base + path)}</loc>\n    <lastmod>{lastmod}</lastmod>\n  </url>"
        for path in SITEMAP_TRAP_PATHS
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n</urlset>"
    )


def render_denied_page(path: str, link_count: int = 8) -> str:
    """
    Render a plausible 403 page.

    The page links to further trap paths so a crawler that follows them keeps
    triggering violations, and carries ~4 KiB of random padding.
    """
    ref = secrets.token_hex(4)
    links = random.sample(NAV_LINKS, link_count)
    nav = "\n".join(f'<a href="{link}">{link[1:]}</a>' for link in links)
    padding = b64encode(secrets.token_bytes(3072)).decode("ascii")
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex, nofollow">
<title>403 Forbidden</title>
<style>
body{{font-family:system-ui,-apple-system,sans-serif;background:#0a0a0a;color:#aaa;display:flex;align-items:center;justify-content:center;min-height:100vh;margin:0}}
.c{{max-width:480px;padding:2rem;border:1px solid #222;text-align:center}}
h1{{color:#b91c1c;font-size:3rem;margin:0 0 .5rem}}
p{{margin:.5rem 0;font-size:.9rem}}
.ref{{font-size:.7rem;color:#444;font-family:monospace}}
a{{color:#666;text-decoration:none;font-size:.75rem}}
nav{{margin-top:1.5rem;display:flex;flex-wrap:wrap;gap:.5rem;justify-content:center}}
</style>
</head>
<body>
<div class="c">
<h1>403</h1>
<p>Access to this resource is restricted.</p>
<p>Authorized personnel must authenticate before proceeding.</p>
<p class="ref">Path: {html.escape(path[:200])} &middot; Ref: {ref}</p>
<nav>
{nav}
</nav>
</div>
<!-- {padding} -->
</body>
</html>"""


def denied_response(path: str) -> web.Response:
    """403 page for robots.txt violations, with noise headers attached."""
    headers = {
        **entropy_headers(DENIED_PAGE_NOISE_HEADERS),
        **defense_headers(),
        "Cache-Control": "no-store, no-cache, must-revalidate",
    }
    return web.Response(
        text=render_denied_page(path),
        status=403,
        content_type="text/html",
        charset="utf-8",
        headers=headers,
    )
