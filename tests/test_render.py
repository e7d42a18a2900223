import unittest

from yarl import URL

from url_previewer.config import FieldLimits
from url_previewer.fetcher import PreviewMetadata
from url_previewer.render import (
    collapse_whitespace,
    escape_attr,
    escape_text,
    length_in_bytes,
    length_in_chars,
    limit_field,
    render_loading,
    render_preview,
    render_unavailable,
)

BACKREF = "https://matrix.to/#/!room:example.org/$event?via=example.org&x=1"


class EscapeTests(unittest.TestCase):
    def test_escape_attr(self):
        self.assertEqual(escape_attr('a&b"c<d>'), 'a&amp;b&quot;c<d>')

    def test_escape_text(self):
        self.assertEqual(escape_text('a&b"c<d>'), 'a&amp;b"c&lt;d&gt;')

    def test_collapse_whitespace(self):
        self.assertEqual(collapse_whitespace("  a \n\t\r b\x0c c  "), "a b c")
        # Non-breaking spaces are content, not HTML whitespace.
        self.assertEqual(collapse_whitespace("a\u00a0 b"), "a\u00a0 b")


class TruncationTests(unittest.TestCase):
    def test_length_in_chars(self):
        self.assertEqual(length_in_chars("", 0), "")
        self.assertEqual(length_in_chars("", 5), "")
        self.assertEqual(length_in_chars("abc", 0), "…")
        self.assertEqual(length_in_chars("hello", 5), "hello")
        self.assertEqual(length_in_chars("hello world", 5), "hell…")
        self.assertEqual(length_in_chars("日本語のテキスト", 3), "日本…")

    def test_length_in_chars_single_trailing_ellipsis(self):
        self.assertEqual(length_in_chars("ab……cdef", 4), "ab…")
        self.assertEqual(length_in_chars("……………", 3), "…")

    def test_length_in_bytes(self):
        self.assertEqual(length_in_bytes("hello", 5), "hello")
        self.assertEqual(length_in_bytes("hello world", 8), "hello…")
        result = length_in_bytes("ééééé", 6)
        self.assertEqual(result, "é…")
        self.assertLessEqual(len(result.encode("utf-8")), 6)

    def test_length_in_bytes_never_splits_code_points(self):
        for budget in range(3, 20):
            result = length_in_bytes("😀" * 10, budget)
            self.assertLessEqual(len(result.encode("utf-8")), budget)
            self.assertTrue(result.endswith("…"))

    def test_limit_field_applies_byte_cap(self):
        result = limit_field("x" * 5000, 5000)
        self.assertLessEqual(len(result.encode("utf-8")), 1024)
        self.assertTrue(result.endswith("…"))


class RenderTests(unittest.TestCase):
    def test_loading(self):
        body = render_loading(BACKREF)
        self.assertEqual(body.text, "(Loading…)")
        self.assertIn('href="https://matrix.to/#/!room:example.org/$event?via=example.org&amp;x=1"', body.html)
        self.assertIn("<em>Loading…</em>", body.html)
        self.assertTrue(body.html.startswith("<blockquote>"))
        self.assertTrue(body.html.endswith("</blockquote>"))

    def test_unavailable(self):
        body = render_unavailable(BACKREF)
        self.assertEqual(body.text, "(URL preview is unavailable.)")
        self.assertIn("URL preview is unavailable.", body.html)

    def test_full_preview(self):
        metadata = PreviewMetadata(
            title="Hello <World>",
            site_name="Example & Co",
            description="A  long\n\ndescription",
            canonical_url="https://example.org/canonical#section",
        )
        body = render_preview(BACKREF, metadata, URL("https://example.org/fetched"))
        self.assertEqual(
            body.text, "Hello <World> – Example & Co\n> A long description"
        )
        self.assertIn(
            '<a class="url-preview-title" href="https://example.org/canonical">'
            "Hello &lt;World&gt;</a>",
            body.html,
        )
        self.assertIn(
            '<span class="url-preview-site-name">Example &amp; Co</span>', body.html
        )
        self.assertIn(
            '<div class="url-preview-description">A long description</div>', body.html
        )
        self.assertNotIn("section", body.html)

    def test_empty_title(self):
        metadata = PreviewMetadata(canonical_url="https://example.org/")
        body = render_preview(BACKREF, metadata, URL("https://example.org/fetched"))
        self.assertEqual(body.text, "(No title)")
        self.assertIn("No title</a></em>", body.html)
        self.assertNotIn("url-preview-site-name", body.html)
        self.assertNotIn("url-preview-description", body.html)

    def test_invalid_canonical_url_falls_back_to_fetched_url(self):
        for canonical in ("javascript:alert(1)", "", "/relative"):
            metadata = PreviewMetadata(title="t", canonical_url=canonical)
            body = render_preview(BACKREF, metadata, URL("https://example.org/fetched"))
            self.assertIn('href="https://example.org/fetched"', body.html)

    def test_field_limits(self):
        metadata = PreviewMetadata(
            title="t" * 50, site_name="s" * 50, description="d" * 50
        )
        body = render_preview(
            BACKREF,
            metadata,
            URL("https://example.org/"),
            FieldLimits(title=10, site_name=5, description=20),
        )
        self.assertEqual(
            body.text, "t" * 9 + "… – " + "s" * 4 + "…\n> " + "d" * 19 + "…"
        )


if __name__ == "__main__":
    unittest.main()
