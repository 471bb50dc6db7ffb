"""End-to-end crawl tests against an in-memory site."""

from __future__ import annotations

import pytest

from conftest import asset, page
from wget_mirror import (
    CrawlState,
    FetchError,
    MirrorJob,
    ParseError,
    SiteMirror,
    decode_body,
    encode_body,
    mirror_site,
)

SEED = "http://example.com/"


def run(tmp_path, fetcher, **job_kwargs) -> CrawlState:
    job = MirrorJob(url=job_kwargs.pop("url", SEED), output_dir=str(tmp_path), **job_kwargs)
    return SiteMirror(job, fetcher).run()


class TestEndToEnd:
    ROUTES = {
        SEED: page(
            '<html><head><link rel="stylesheet" href="/style.css"></head><body>'
            '<a href="/about">About</a> <img src="/logo.png">'
            '<a href="http://other.com/x">elsewhere</a>'
            "</body></html>"
        ),
        "http://example.com/about": page('<a href="/">home</a><img src="/logo.png">'),
        "http://example.com/logo.png": asset(b"\x89PNG\r\n", "image/png"),
        "http://example.com/style.css": asset(b"body{color:red}", "text/css"),
    }

    def test_tree_written(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        state = run(tmp_path, fetcher)

        root = tmp_path / "example.com"
        assert (root / "index.html").is_file()
        assert (root / "about.html").read_text() == '<a href="/">home</a><img src="/logo.png">'
        assert (root / "logo.png").read_bytes() == b"\x89PNG\r\n"
        assert (root / "style.css").read_bytes() == b"body{color:red}"
        assert state.pages_written == 2
        assert state.files_written == 2
        assert state.failures == []

    def test_external_link_never_fetched(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        run(tmp_path, fetcher)
        assert not [u for u in fetcher.calls if "other.com" in u]

    def test_each_url_fetched_once(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        state = run(tmp_path, fetcher)
        assert set(fetcher.count().values()) == {1}
        assert set(fetcher.calls) == set(self.ROUTES)
        assert state.visited == set(self.ROUTES)

    def test_pages_walked_depth_first(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        run(tmp_path, fetcher)
        assert fetcher.calls == [
            SEED,
            "http://example.com/style.css",
            "http://example.com/about",
            "http://example.com/logo.png",
        ]

    def test_converted_links_on_disk(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        run(tmp_path, fetcher, convert_links=True)
        index = (tmp_path / "example.com" / "index.html").read_text()
        assert 'href="./style.css"' in index
        assert 'href="./about.html"' in index
        assert 'src="./logo.png"' in index
        assert 'href="http://other.com/x"' in index

    def test_mirror_site_with_given_fetcher(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(dict(self.ROUTES))
        state = mirror_site(MirrorJob(url=SEED, output_dir=str(tmp_path)), fetcher)
        assert state.pages_written == 2


class TestSeedFailures:
    def test_missing_seed_is_fatal(self, tmp_path, make_fetcher):
        with pytest.raises(FetchError) as info:
            run(tmp_path, make_fetcher({}))
        assert info.value.status == 404
        assert not (tmp_path / "example.com").exists()

    def test_unreachable_seed_is_fatal(self, tmp_path, make_fetcher, network_down):
        with pytest.raises(FetchError):
            run(tmp_path, make_fetcher({SEED: network_down}))

    def test_unparseable_seed(self, tmp_path, make_fetcher):
        with pytest.raises(ParseError):
            run(tmp_path, make_fetcher({}), url="http://[::1/")


class TestBestEffort:
    def test_broken_children_recorded(self, tmp_path, make_fetcher, network_down):
        fetcher = make_fetcher(
            {
                SEED: page('<a href="/gone">x</a><img src="/down.png"><a href="/ok">y</a>'),
                "http://example.com/down.png": network_down,
                "http://example.com/ok": page("fine"),
            }
        )
        state = run(tmp_path, fetcher)
        failed = [url for url, _ in state.failures]
        assert failed == ["http://example.com/gone", "http://example.com/down.png"]
        assert (tmp_path / "example.com" / "ok.html").read_text() == "fine"
        assert state.pages_written == 2

    def test_non_html_page_skipped(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<a href="/data">data</a>'),
                "http://example.com/data": asset(b'{"a": 1}', "application/json"),
            }
        )
        state = run(tmp_path, fetcher)
        assert state.skipped == ["http://example.com/data"]
        assert not (tmp_path / "example.com" / "data.html").exists()

    def test_cycle_terminates(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<a href="/b">b</a>'),
                "http://example.com/b": page('<a href="/">a</a><a href="/b">self</a>'),
            }
        )
        state = run(tmp_path, fetcher)
        assert fetcher.calls == [SEED, "http://example.com/b"]
        assert state.pages_written == 2


class TestFilters:
    def test_rejected_suffix_never_fetched(self, tmp_path, make_fetcher):
        fetcher = make_fetcher({SEED: page('<a href="/manual.pdf">m</a><img src="/a.gif">')})
        run(tmp_path, fetcher, reject=("pdf", "gif"))
        assert fetcher.calls == [SEED]

    def test_excluded_prefix_never_fetched(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<a href="/private/a">p</a><a href="/public">q</a>'),
                "http://example.com/public": page("ok"),
            }
        )
        run(tmp_path, fetcher, exclude=("/private",))
        assert fetcher.calls == [SEED, "http://example.com/public"]

    def test_excluded_seed_writes_nothing(self, tmp_path, make_fetcher):
        fetcher = make_fetcher({"http://example.com/docs/": page("x")})
        state = run(tmp_path, fetcher, url="http://example.com/docs/", exclude=("/docs",))
        assert fetcher.calls == []
        assert state.skipped == ["http://example.com/docs/"]

    def test_subdomain_assets_share_tree(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<img src="http://cdn.example.com/img/a.png">'),
                "http://cdn.example.com/img/a.png": asset(b"png", "image/png"),
            }
        )
        run(tmp_path, fetcher)
        assert (tmp_path / "example.com" / "img" / "a.png").read_bytes() == b"png"


class TestNestedDocuments:
    def test_stylesheet_references_followed(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<link rel="stylesheet" href="/css/site.css">'),
                "http://example.com/css/site.css": asset(
                    b'@import "print.css"; body{background:url(../img/bg.png)}', "text/css"
                ),
                "http://example.com/css/print.css": asset(b"p{}", "text/css"),
                "http://example.com/img/bg.png": asset(b"bg", "image/png"),
            }
        )
        state = run(tmp_path, fetcher, convert_links=True)
        root = tmp_path / "example.com"
        assert (root / "css" / "print.css").read_bytes() == b"p{}"
        assert (root / "img" / "bg.png").read_bytes() == b"bg"
        assert (root / "css" / "site.css").read_text() == (
            "@import \"./print.css\"; body{background:url(../img/bg.png)}"
        )
        assert state.files_written == 3

    def test_script_image_strings_followed(self, tmp_path, make_fetcher):
        fetcher = make_fetcher(
            {
                SEED: page('<script src="/app.js"></script><script>var a = "/img/x";</script>'),
                "http://example.com/app.js": asset(
                    b'el.src = "/images/hero.jpg"; fetch("/api/data");',
                    "application/javascript",
                ),
                "http://example.com/images/hero.jpg": asset(b"jpg", "image/jpeg"),
                "http://example.com/img/x": asset(b"x", "image/png"),
            }
        )
        run(tmp_path, fetcher)
        assert "http://example.com/api/data" not in fetcher.calls
        root = tmp_path / "example.com"
        assert (root / "images" / "hero.jpg").read_bytes() == b"jpg"
        # extensionless resources still get the page suffix on disk
        assert (root / "img" / "x.html").read_bytes() == b"x"

    def test_undecodable_bytes_preserved(self, tmp_path, make_fetcher):
        body = b"<p>caf\xe9 \xff</p>"
        fetcher = make_fetcher({SEED: (200, "text/html", body)})
        run(tmp_path, fetcher, convert_links=True)
        assert (tmp_path / "example.com" / "index.html").read_bytes() == body


class TestCharsets:
    @pytest.mark.parametrize(
        "content_type,body",
        [
            ("text/html; charset=base64", b"<p>b</p>"),
            ("text/html; charset=utf-16", b"<p>x</p>!"),
        ],
    )
    def test_odd_charset_does_not_stop_crawl(self, tmp_path, make_fetcher, content_type, body):
        fetcher = make_fetcher(
            {
                SEED: page('<a href="/b">b</a><img src="/logo.png">'),
                "http://example.com/b": (200, content_type, body),
                "http://example.com/logo.png": asset(b"png", "image/png"),
            }
        )
        state = run(tmp_path, fetcher, convert_links=True)
        root = tmp_path / "example.com"
        assert (root / "b.html").read_bytes() == body
        assert (root / "logo.png").read_bytes() == b"png"
        assert state.failures == []

    @pytest.mark.parametrize(
        "content_type,expected",
        [
            ("text/html; charset=ISO-8859-1", "iso-8859-1"),
            ("text/html; charset=hex", "utf-8"),
            ("text/html; charset=no-such-codec", "utf-8"),
            ("text/html", "utf-8"),
        ],
    )
    def test_decode_body_encoding(self, content_type, expected):
        assert decode_body(b"<p>x</p>", content_type)[1] == expected

    def test_truncated_utf16_falls_back(self):
        text, encoding = decode_body(b"<p>x</p>!", "text/html; charset=utf-16")
        assert (text, encoding) == ("<p>x</p>!", "utf-8")

    def test_unencodable_text_is_parse_error(self):
        with pytest.raises(ParseError):
            encode_body("café ☃", "ascii")
