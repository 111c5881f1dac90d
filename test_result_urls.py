"""
Tests for result-location rewriting.
"""

from result_urls import RESULTS_PATH, rewrite_result_url


def test_absolute_url_token():
    rewritten = rewrite_result_url("https://backend.internal:8443/results?token=abc&x=1")
    assert rewritten == "/api/results?token=abc"
    assert "backend.internal" not in rewritten
    assert "8443" not in rewritten
    assert "https" not in rewritten


def test_relative_and_malformed_fall_back_to_regex():
    assert rewrite_result_url("/results?token=abc") == "/api/results?token=abc"
    assert rewrite_result_url("results?x=1&token=t-1_2") == "/api/results?token=t-1_2"
    assert rewrite_result_url("http://[::1/results?token=zz") == "/api/results?token=zz"


def test_token_is_percent_encoded():
    assert rewrite_result_url("https://b/results?token=a%2Fb%20c") == "/api/results?token=a%2Fb%20c"
    assert rewrite_result_url("/results?token=a/b") == "/api/results?token=a%2Fb"
    assert rewrite_result_url("https://b/results?token=x*y(1)") == "/api/results?token=x*y(1)"


def test_missing_token_degrades_to_bare_path():
    for value in ["https://backend/results", "https://backend/results?token=", "nonsense", "", None, 42]:
        assert rewrite_result_url(value) == RESULTS_PATH, f"{value!r} should map to the bare path"


def test_never_leaks_origin():
    samples = [
        "http://10.0.0.5:9000/results?token=abc",
        "https://user:pw@backend.example.com/results?token=abc",
        "ftp://backend.example.com/?token=abc",
    ]
    for value in samples:
        rewritten = rewrite_result_url(value)
        assert rewritten.startswith("/api/results")
        for fragment in ("10.0.0.5", "9000", "backend.example.com", "user:pw", "://"):
            assert fragment not in rewritten
