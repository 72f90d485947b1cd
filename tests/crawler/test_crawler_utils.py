from src.crawler.utils import (
    is_same_host,
    mask_secret,
    normalize_host,
    sanitize_optional,
    sanitize_text,
)


def test_sanitize_text_strips_control_characters():
    assert sanitize_text("  Food\x00 bank\x07 opens\n ") == "Food bank opens"
    assert sanitize_text("tab\tkept") == "tab\tkept"
    assert sanitize_text(None) == ""
    assert sanitize_optional("\x00  ") is None
    assert sanitize_optional(" value ") == "value"


def test_normalize_host_drops_www_credentials_and_port():
    assert normalize_host("https://WWW.Example.org/path") == "example.org"
    assert normalize_host("https://user:pw@example.org:8443/x") == "example.org"
    assert normalize_host("not a url") == ""
    assert is_same_host("https://www.example.org/a", "http://example.org/b")
    assert not is_same_host("not a url", "also not")


def test_mask_secret():
    assert mask_secret("sk-1234567890abcd") == "***abcd"
    assert mask_secret("short") == "***"
    assert mask_secret("") is None
    assert mask_secret(None) is None
