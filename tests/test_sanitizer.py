import re

import pytest

from sanitizer import BULLET, sanitize_html_to_text, truncate_text


def test_release_notes_keep_structure():
    raw = "<p>Released <strong>v2.0</strong></p><ul><li>Fix A</li><li>Fix B</li></ul>"

    assert sanitize_html_to_text(raw) == "Released v2.0\n• Fix A\n• Fix B"


def test_ordered_lists_use_bullets_too():
    assert sanitize_html_to_text("<ol><li>One</li><li>Two</li></ol>") == f"{BULLET}One\n{BULLET}Two"


def test_block_elements_and_breaks_end_lines():
    assert sanitize_html_to_text("<div>a</div><div>b</div>") == "a\nb"
    assert sanitize_html_to_text("line1<br>line2<br/>line3") == "line1\nline2\nline3"
    assert sanitize_html_to_text("<h2>Title</h2>Body") == "Title\nBody"


def test_at_most_one_blank_line_between_paragraphs():
    assert sanitize_html_to_text("<p>a</p>\n\n\n\n<p>b</p>") == "a\n\nb"


def test_spaces_and_tabs_collapse():
    assert sanitize_html_to_text("  lots   of\t\tspace  ") == "lots of space"


def test_entities_are_decoded():
    raw = "Tom &amp; Jerry &quot;quoted&quot; it&#39;s&nbsp;here &hellip; &mdash; &ndash; &ldquo;x&rdquo;"

    text = sanitize_html_to_text(raw)

    assert text == "Tom & Jerry \"quoted\" it's here … — – “x”"


def test_script_and_style_bodies_are_dropped():
    assert sanitize_html_to_text("<script>alert(1)</script><style>p{}</style>Hello") == "Hello"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_empty_input_gives_empty_output(raw):
    assert sanitize_html_to_text(raw) == ""


def test_malformed_markup_does_not_raise():
    assert sanitize_html_to_text("<p>unclosed <b>bold") == "unclosed bold"
    assert sanitize_html_to_text("<<div>>text</p></ul>") is not None


@pytest.mark.parametrize("raw", [
    "<p>Released <strong>v2.0</strong></p><ul><li>Fix A</li><li>Fix B</li></ul>",
    "<div>  spaced   <em>out</em> </div>\n\n\n<p>next</p>",
    "plain text only",
    "<p>a</p><p></p><p></p><p>b</p>",
    "Tom &amp; Jerry",
])
def test_second_pass_changes_nothing(raw):
    once = sanitize_html_to_text(raw)

    assert sanitize_html_to_text(once) == once


@pytest.mark.parametrize("raw", [
    "<a href='x'>link</a> <img src='y.png'/> <span class=\"c\">s</span>",
    "<table><tr><td>cell</td></tr></table>",
    "<custom-tag attr=1>inner</custom-tag>",
])
def test_markup_tags_are_removed(raw):
    assert re.search(r"<[a-zA-Z/][^>]*>", sanitize_html_to_text(raw)) is None


def test_tags_rebuilt_by_stripping_are_stripped_again():
    assert sanitize_html_to_text("<<b>b>x<</b>/b>") == "x"


@pytest.mark.parametrize("raw", [
    "<<b>b>x<</b>/b>",
    "<<p>p>para<</p>/p>",
    "&lt;b&gt;x&lt;/b&gt;",
    "&lt;script&gt;alert(1)&lt;/script&gt;ok",
    "<<<<<b>b>b>b>b>deep",
])
def test_split_and_escaped_tags_do_not_survive(raw):
    once = sanitize_html_to_text(raw)

    assert re.search(r"<[a-zA-Z/!][^>]*>", once) is None
    assert sanitize_html_to_text(once) == once


def test_truncate_cuts_and_appends_ellipsis():
    assert truncate_text("<p>Hello world</p>", 5) == "Hello..."
    assert truncate_text("abc def", 4) == "abc..."


def test_truncate_leaves_short_text_alone():
    assert truncate_text("<b>short</b>", 10) == "short"
    assert truncate_text("exact", 5) == "exact"


@pytest.mark.parametrize("max_length", [0, 1, 3, 10, 50, -5])
def test_truncate_length_bound(max_length):
    text = "<p>" + "word " * 40 + "</p>"

    result = truncate_text(text, max_length)

    assert len(result) <= max(max_length, 0) + 3


def test_truncate_handles_empty_input():
    assert truncate_text(None, 10) == ""
    assert truncate_text("", 0) == ""
