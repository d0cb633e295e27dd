from __future__ import annotations

import pytest

from app.services.domain import (
    InvalidDomainError,
    derive_aliases,
    etld1,
    is_audited_url,
    normalize_from_url,
)


def test_normalize_from_url_parses_full_url():
    info = normalize_from_url("https://Blog.Example.com/path/page?x=1")
    assert info.hostname == "blog.example.com"
    assert info.etld1 == "example.com"
    assert info.audited_url == "https://blog.example.com"
    assert info.path == "/path/page"


def test_normalize_from_url_accepts_bare_domain():
    info = normalize_from_url("example.co.uk")
    assert info.hostname == "example.co.uk"
    assert info.etld1 == "example.co.uk"
    assert info.path == "/"


@pytest.mark.parametrize("value", ["", "   ", "https://", "ftp://example.com", "exa mple.com", "nodots"])
def test_normalize_from_url_rejects_unparseable_input(value):
    with pytest.raises(InvalidDomainError):
        normalize_from_url(value)


@pytest.mark.parametrize(
    "host,expected",
    [
        ("example.com", "example.com"),
        ("www.example.com", "example.com"),
        ("a.b.example.com", "example.com"),
        ("shop.example.co.uk", "example.co.uk"),
        ("www.store.com.au", "store.com.au"),
        ("news.site.co.jp", "site.co.jp"),
        ("localhost", "localhost"),
        ("192.168.1.10", "192.168.1.10"),
        ("EXAMPLE.COM.", "example.com"),
    ],
)
def test_etld1(host, expected):
    assert etld1(host) == expected


@pytest.mark.parametrize(
    "host",
    ["example.com", "a.b.c.example.org", "x.y.co.uk", "co.uk", "com", "10.0.0.1", "deep.sub.site.com.br"],
)
def test_etld1_is_idempotent(host):
    assert etld1(etld1(host)) == etld1(host)


def test_is_audited_url_is_reflexive():
    assert is_audited_url("https://example.com", "example.com", [])
    assert is_audited_url("https://www.example.com/", "www.example.com", [])


def test_is_audited_url_matches_subdomains_and_aliases():
    assert is_audited_url("https://docs.example.com/guide", "example.com", [])
    assert is_audited_url("https://example-brand.io/about", "example.com", ["example-brand.io"])
    assert is_audited_url("https://help.example-brand.io/", "example.com", ["example-brand.io"])
    assert not is_audited_url("https://rival.com/page", "example.com", ["example-brand.io"])
    assert not is_audited_url("not a url", "example.com", [])


def test_derive_aliases_from_description_and_known_map():
    description = (
        "Acme runs acme.com and its sister brand AcmeTools.io. "
        "Contact support@acme.com or read config.json for setup."
    )
    aliases = derive_aliases(
        "www.acme.com",
        description,
        known_aliases={"acme.com": ["acme-labs.dev"]},
    )
    assert aliases == ["acme-labs.dev", "acmetools.io"]


def test_derive_aliases_is_deterministic_without_description():
    assert derive_aliases("example.com") == []
    assert derive_aliases("example.com", None) == derive_aliases("example.com", "")
