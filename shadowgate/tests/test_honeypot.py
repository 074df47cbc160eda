# shadowgate/tests/test_honeypot.py
from shadowgate.config import DEFAULT_HONEYPOT_PATHS
from shadowgate.honeypot import HoneypotDetector


def test_default_decoys_match_exactly():
    hp = HoneypotDetector()
    for p in DEFAULT_HONEYPOT_PATHS:
        assert hp.matches(p), p


def test_segment_boundary_prefix():
    hp = HoneypotDetector(["/wp-admin"])
    assert hp.matches("/wp-admin/")
    assert hp.matches("/wp-admin/setup-config.php")
    assert not hp.matches("/wp-administrator")
    assert not hp.matches("/blog/wp-admin")


def test_case_sensitive():
    hp = HoneypotDetector(["/admin"])
    assert not hp.matches("/Admin")
    assert not hp.matches("/ADMIN/login")


def test_exempt_prefix_never_matches():
    hp = HoneypotDetector(["/api", "/admin"], exempt_prefixes=["/api/admin"])
    assert not hp.matches("/api/admin")
    assert not hp.matches("/api/admin/hidden/abc/access")
    assert hp.matches("/api/other")
    assert hp.matches("/admin")


def test_ordinary_paths_do_not_match():
    hp = HoneypotDetector()
    assert not hp.matches("/")
    assert not hp.matches("")
    assert not hp.matches("/healthz")
    assert not hp.matches("/administration-guide")
