import unittest

from url_previewer.formatting import (
    LINK_EMOJI,
    build_preview_content,
    event_permalink,
    render_preview,
)
from url_previewer.models import ChainKey, Metadata, Preview

KEY = ChainKey("!room:hs", "$orig")


class PreviewContentTests(unittest.TestCase):
    def test_content_is_notice_without_mentions(self):
        preview = Preview("https://a.test/", Metadata(title="A", description="About"))
        content = build_preview_content(KEY, [preview])

        self.assertEqual(content["msgtype"], "m.notice")
        self.assertEqual(content["format"], "org.matrix.custom.html")
        self.assertEqual(content["m.mentions"], {})
        self.assertEqual(content["body"], "A\n> About")
        self.assertIn("<blockquote>", content["formatted_body"])
        self.assertIn(event_permalink(KEY), content["formatted_body"])
        self.assertIn(LINK_EMOJI, content["formatted_body"])

    def test_permalink_quotes_ids(self):
        self.assertEqual(
            event_permalink(ChainKey("!a:hs", "$b/c")),
            "https://matrix.to/#/%21a%3Ahs/%24b%2Fc",
        )

    def test_markup_in_metadata_is_escaped(self):
        preview = Preview(
            "https://a.test/", Metadata(title="<b>bold</b>", description="x & y")
        )
        _, formatted = render_preview(preview, "https://matrix.to/#/x", 300)
        self.assertIn("&lt;b&gt;bold&lt;/b&gt;", formatted)
        self.assertIn("x &amp; y", formatted)
        self.assertNotIn("<b>", formatted)

    def test_long_description_is_truncated_with_ellipsis(self):
        preview = Preview("https://a.test/", Metadata(title="T", description="word " * 100))
        plain, _ = render_preview(preview, "https://matrix.to/#/x", 20)
        description = plain.split("\n> ", 1)[1]
        self.assertLessEqual(len(description), 20)
        self.assertTrue(description.endswith("…"))

    def test_whitespace_is_collapsed(self):
        preview = Preview("https://a.test/", Metadata(title="  Two\n\n  lines  "))
        plain, _ = render_preview(preview, "https://matrix.to/#/x", 300)
        self.assertEqual(plain, "Two lines")

    def test_canonical_url_links_headline_and_url_is_fallback_title(self):
        preview = Preview(
            "https://a.test/?utm=1",
            Metadata(description="d", canonical_url="https://a.test/"),
        )
        plain, formatted = render_preview(preview, "https://matrix.to/#/x", 300)
        self.assertTrue(plain.startswith("https://a.test/\n"))
        self.assertIn('href="https://a.test/"', formatted)

    def test_site_name_is_appended(self):
        preview = Preview("https://a.test/", Metadata(title="T", site_name="Site"))
        plain, formatted = render_preview(preview, "https://matrix.to/#/x", 300)
        self.assertEqual(plain, "T – Site")
        self.assertIn("<span>Site</span>", formatted)

    def test_several_previews_are_joined(self):
        previews = [
            Preview("https://a.test/", Metadata(title="A")),
            Preview("https://b.test/", Metadata(title="B")),
        ]
        content = build_preview_content(KEY, previews)
        self.assertEqual(content["body"], "A\n\nB")
        self.assertEqual(content["formatted_body"].count("<blockquote>"), 2)
