import pytest

from squache_monitor.domains import canonical_domain, extract_hostname, extract_primary_domain


@pytest.mark.parametrize(
    "target,expected",
    [
        ("example.com:443", "example.com"),
        ("Example.COM:443", "example.com"),
        ("https://a.b.com/x", "a.b.com"),
        ("http://Example.COM:8080/path?q=1", "example.com"),
        ("ftp://files.example.net/pub", "files.example.net"),
        ("cdn.example.org/assets/app.js", "cdn.example.org"),
        ("CDN.Example.org/assets/app.js", "cdn.example.org"),
        ("10.0.0.5:3128", "10.0.0.5"),
        ("", "unknown"),
        ("/relative/path", "unknown"),
        ("error:invalid-request", "error"),
    ],
)
def test_extract_hostname(target, expected):
    assert extract_hostname(target) == expected


@pytest.mark.parametrize(
    "hostname,expected",
    [
        ("blog.example.co.uk", "example.co.uk"),
        ("a.b.example.com", "example.com"),
        ("example.com", "example.com"),
        ("shop.example.com.au", "example.com.au"),
        ("WWW.Example.COM", "example.com"),
        ("10.0.0.5", "10.0.0.5"),
        ("localhost:3128", "localhost"),
        ("localhost", "localhost"),
        ("intranet", "intranet"),
        ("co.uk", "co.uk"),
        ("", "unknown"),
    ],
)
def test_extract_primary_domain(hostname, expected):
    assert extract_primary_domain(hostname) == expected


def test_unknown_suffix_falls_back_to_last_two_labels():
    # "com.ar" is not in the suffix table
    assert extract_primary_domain("foo.example.com.ar") == "com.ar"


def test_ipv6_literal_is_returned_unchanged():
    assert extract_primary_domain("2001:db8::1") == "2001:db8::1"


def test_canonical_domain_composes_both_steps():
    assert canonical_domain("https://static.assets.example.co.uk/img.png") == "example.co.uk"
    assert canonical_domain("api.github.com:443") == "github.com"
    assert canonical_domain("") == "unknown"


def test_hostname_case_does_not_split_subdomains():
    targets = ["Example.COM:443", "https://example.com/", "EXAMPLE.com/index.html"]
    assert {extract_hostname(t) for t in targets} == {"example.com"}
