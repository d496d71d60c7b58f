"""Tests for robots.txt traps and the denied page."""

import re

import pytest

from nkshield.traps import (
    AI_CRAWLERS,
    DENIED_PAGE_NOISE_HEADERS,
    ROBOTS_TRAP_PREFIXES,
    SITEMAP_TRAP_PATHS,
    denied_response,
    is_robots_trap,
    render_denied_page,
    render_robots_txt,
    render_trap_sitemap,
)


class TestIsRobotsTrap:
    """Tests for is_robots_trap."""

    @pytest.mark.parametrize(
        "path",
        ["/admin", "/admin/", "/admin/login", "/BACKUP/latest", "/debug/pprof", "/logs/access"],
    )
    def test_trap_paths(self, path):
        """Test paths under a Disallow prefix are traps."""
        assert is_robots_trap(path)

    @pytest.mark.parametrize(
        "path",
        ["/", "/api/kv", "/administrator", "/admin_backup", "/database", "/blog/admin"],
    )
    def test_other_paths(self, path):
        """Test prefixes only match whole path segments."""
        assert not is_robots_trap(path)


class TestRobotsTxt:
    """Tests for render_robots_txt."""

    def test_disallows_every_trap(self):
        """Test each trap prefix is published."""
        body = render_robots_txt("https://band.example.com")

        for prefix in ROBOTS_TRAP_PREFIXES:
            assert f"Disallow: {prefix}/" in body

    def test_blocks_ai_crawlers(self):
        """Test AI crawlers are disallowed entirely."""
        body = render_robots_txt("https://band.example.com")

        for crawler in AI_CRAWLERS:
            assert f"User-agent: {crawler}\nDisallow: /" in body

    def test_sitemap_link(self):
        """Test the trap sitemap is advertised without a double slash."""
        body = render_robots_txt("https://band.example.com/")

        assert "Sitemap: https://band.example.com/sitemap-extended.xml" in body


class TestTrapSitemap:
    """Tests for render_trap_sitemap."""

    def test_lists_trap_paths(self):
        """Test every sitemap entry points at a trap."""
        body = render_trap_sitemap("https://band.example.com", "2026-01-01")
        locs = re.findall(r"<loc>https://band\.example\.com(.*?)</loc>", body)

        assert locs == list(SITEMAP_TRAP_PATHS)
        assert all(is_robots_trap(path) for path in locs)
        assert body.count("<lastmod>2026-01-01</lastmod>") == len(SITEMAP_TRAP_PATHS)


class TestDeniedPage:
    """Tests for the robots violation response."""

    def test_links_more_traps(self):
        """Test the page links eight further trap paths."""
        page = render_denied_page("/admin")
        links = re.findall(r'<a href="([^"]+)">', page)

        assert len(links) == 8
        assert all(is_robots_trap(link) for link in links)

    def test_path_escaped(self):
        """Test the requested path is HTML-escaped."""
        page = render_denied_page("/admin/<script>")

        assert "<script>" not in page
        assert "&lt;script&gt;" in page

    def test_padding(self):
        """Test the page carries a few KiB of padding."""
        assert len(render_denied_page("/admin")) > 4096

    def test_denied_response(self):
        """Test the 403 response carries noise headers and no caching."""
        response = denied_response("/admin")
        noise = [h for h in response.headers if h.startswith("X-Neural-Noise-")]

        assert response.status == 403
        assert response.content_type == "text/html"
        assert len(noise) == DENIED_PAGE_NOISE_HEADERS
        assert "no-store" in response.headers["Cache-Control"]
