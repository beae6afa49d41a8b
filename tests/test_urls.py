import pytest

from pds_indexer.core.urls import (
    did_from_at_uri,
    hostname_of,
    normalize_host_url,
    rkey_or_passthrough,
    truncate_text,
)


def test_normalize_host_url_lowercases_and_drops_path_and_default_port() -> None:
    assert normalize_host_url("HTTPS://PDS.Example.com:443/xrpc/") == "https://pds.example.com"
    assert normalize_host_url("pds.example.com") == "https://pds.example.com"
    assert normalize_host_url("http://localhost:2583") == "http://localhost:2583"


@pytest.mark.parametrize("raw", ["", "   ", "ftp://pds.example.com", "https://"])
def test_normalize_host_url_rejects_invalid_values(raw: str) -> None:
    with pytest.raises(ValueError):
        normalize_host_url(raw)


def test_hostname_of_handles_bare_hosts() -> None:
    assert hostname_of("https://Morel.us-east.host.bsky.network") == "morel.us-east.host.bsky.network"
    assert hostname_of("bsky.social") == "bsky.social"
    assert hostname_of("") is None


def test_at_uri_helpers() -> None:
    uri = "at://did:plc:abc/pub.chive.graph.field/quantum-biology"
    assert did_from_at_uri(uri) == "did:plc:abc"
    assert did_from_at_uri("https://example.com") is None
    assert rkey_or_passthrough(uri) == "quantum-biology"
    assert rkey_or_passthrough("quantum-biology") == "quantum-biology"


def test_truncate_text_bounds_length() -> None:
    assert truncate_text("short") == "short"
    truncated = truncate_text("x" * 600)
    assert len(truncated) == 500
    assert truncated.endswith("...")
