import pytest
from siteprobe.parse import (
    classify_doctype,
    collect_hrefs,
    count_headings,
    detect_html_version,
    detect_login_form,
    extract_title,
    observe,
    parse_html,
)


def observations(html: str):
    return observe(parse_html(html))


class TestHtmlVersion:
    def test_html5_doctype(self):
        assert detect_html_version(observations("<!DOCTYPE html><html></html>")) == "HTML5"

    def test_lowercase_html5_doctype(self):
        assert detect_html_version(observations("<!doctype html><p>x</p>")) == "HTML5"

    def test_missing_doctype_defaults_to_html5(self):
        assert detect_html_version(observations("<html><body>hi</body></html>")) == "HTML5"

    def test_html401_strict(self):
        html = ('<!DOCTYPE HTML PUBLIC "-//W3C//DTD HTML 4.01//EN" '
                '"http://www.w3.org/TR/html4/strict.dtd"><html></html>')
        assert detect_html_version(observations(html)) == "HTML 4.01 Strict"

    @pytest.mark.parametrize("doctype,expected", [
        ('HTML PUBLIC "-//W3C//DTD HTML 4.01 Transitional//EN"', "HTML 4.01 Transitional"),
        ('HTML PUBLIC "-//W3C//DTD HTML 4.01 Frameset//EN"', "HTML 4.01 Frameset"),
        ('html PUBLIC "-//W3C//DTD XHTML 1.0 Strict//EN"', "XHTML 1.0 Strict"),
        ('html PUBLIC "-//W3C//DTD XHTML 1.0 Transitional//EN"', "XHTML 1.0 Transitional"),
        ('html PUBLIC "-//W3C//DTD XHTML 1.1//EN"', "XHTML 1.1"),
        ('html PUBLIC "-//W3C//DTD XHTML Basic 1.0//EN"', "XHTML"),
        ('HTML PUBLIC "-//W3C//DTD HTML 3.2 Final//EN"', "HTML 4.01"),
        ("html", "HTML5"),
    ])
    def test_classify_doctype(self, doctype, expected):
        assert classify_doctype(doctype) == expected


class TestTitleAndHeadings:
    def test_first_title_trimmed(self):
        obs = observations("<html><head><title>  Hello World \n</title></head>"
                           "<body><svg><title>icon</title></svg></body></html>")
        assert extract_title(obs) == "Hello World"

    def test_no_title(self):
        assert extract_title(observations("<p>nothing</p>")) == ""

    def test_heading_counts(self):
        obs = observations("<h1>a</h1><h2>b</h2><h2>c</h2><div><h3>d</h3><h6>e</h6></div>")
        counts = count_headings(obs)
        assert (counts.h1, counts.h2, counts.h3, counts.h4, counts.h5, counts.h6) == (1, 2, 1, 0, 0, 1)

    def test_malformed_markup_is_tolerated(self):
        obs = observations("<html><body><h1>Open<h2>Nested</p><title>Late</title>")
        counts = count_headings(obs)
        assert counts.h1 == 1 and counts.h2 == 1
        assert extract_title(obs) == "Late"


class TestLoginForm:
    def test_password_and_email_without_identifying_attrs(self):
        html = '<form action="/go"><input type="email"><input type="password"></form>'
        assert detect_login_form(observations(html)) is True

    def test_search_form_is_not_login(self):
        html = '<form class="search-box"><input type="text" name="q"><button>Go</button></form>'
        assert detect_login_form(observations(html)) is False

    @pytest.mark.parametrize("attr", ['id="login"', 'class="form signin-form"', 'name="auth"'])
    def test_form_attributes(self, attr):
        html = f'<form {attr}><input type="text" name="q"></form>'
        assert detect_login_form(observations(html)) is True

    def test_bare_password_input(self):
        assert detect_login_form(observations('<div><input type="password"></div>')) is True

    def test_bare_input_matched_by_name(self):
        assert detect_login_form(observations('<input type="text" name="username">')) is True

    def test_plain_inputs(self):
        html = '<input type="text" name="q"><input type="checkbox" id="remember-me">'
        assert detect_login_form(observations(html)) is False

    def test_inputs_are_attributed_to_enclosing_form(self):
        obs = observations('<form><input name="a"></form><form><div><input name="b"></div></form><input name="c">')
        inputs = [o for o in obs if o.tag == "input"]
        assert [o.form for o in inputs] == [0, 1, None]


class TestHrefs:
    def test_skips_non_navigational_targets(self):
        html = """
        <a href="/about">About</a>
        <a href="#top">Top</a>
        <a href="javascript:void(0)">JS</a>
        <a href="JavaScript:alert(1)">JS</a>
        <a href="mailto:me@example.com">Mail</a>
        <a href="tel:+123">Call</a>
        <a href="">Empty</a>
        <a>No href</a>
        <a href="  http://other.com/x  ">Other</a>
        """
        assert collect_hrefs(observations(html)) == ["/about", "http://other.com/x"]

    def test_document_order(self):
        html = '<div><a href="/1"></a><p><a href="/2"></a></p></div><a href="/3"></a>'
        assert collect_hrefs(observations(html)) == ["/1", "/2", "/3"]
