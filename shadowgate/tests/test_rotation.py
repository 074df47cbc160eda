# shadowgate/tests/test_rotation.py
import re
from concurrent.futures import ThreadPoolExecutor

import pytest

from shadowgate.errors import CredentialGenerationError
from shadowgate.rotation import SecretRotationManager

HEX = re.compile(r"^[0-9a-f]+$")


def test_credential_shape():
    mgr = SecretRotationManager()
    cred = mgr.current_credential()
    assert len(cred.secret_path) == 32 and HEX.match(cred.secret_path)
    assert len(cred.access_token) == 64 and HEX.match(cred.access_token)
    assert cred.generation == 1


def test_repr_never_shows_secrets():
    cred = SecretRotationManager().current_credential()
    text = repr(cred)
    assert cred.secret_path not in text
    assert cred.access_token not in text
    assert cred.fingerprint() not in (cred.secret_path, cred.access_token)


def test_rotate_replaces_both_values():
    mgr = SecretRotationManager()
    old = mgr.current_credential()
    new = mgr.rotate()
    assert new is mgr.current_credential()
    assert new.secret_path != old.secret_path
    assert new.access_token != old.access_token
    assert new.generation == old.generation + 1


def test_on_rotate_listener_and_failing_listener():
    mgr = SecretRotationManager()
    seen = []

    def boom(_cred):
        raise RuntimeError("listener down")

    mgr.on_rotate(boom)
    mgr.on_rotate(seen.append)
    cred = mgr.rotate()
    assert seen == [cred]


def test_concurrent_readers_see_whole_pairs():
    mgr = SecretRotationManager()
    valid = {}

    def remember(c):
        valid[c.secret_path] = c.access_token

    remember(mgr.current_credential())
    mgr.on_rotate(remember)

    def read(_):
        c = mgr.current_credential()
        return c.secret_path, c.access_token

    with ThreadPoolExecutor(max_workers=8) as pool:
        futs = [pool.submit(read, i) for i in range(200)]
        for _ in range(20):
            mgr.rotate()
        pairs = [f.result() for f in futs]

    for path, token in pairs:
        assert valid[path] == token


def test_generation_failure_is_fatal():
    def broken(_n):
        raise OSError("no entropy")

    with pytest.raises(CredentialGenerationError):
        SecretRotationManager(token_source=broken)


def test_degenerate_source_is_rejected():
    with pytest.raises(CredentialGenerationError):
        SecretRotationManager(token_source=lambda n: "")


def test_time_token_current_and_previous_window():
    now = [1_000_000.0]
    mgr = SecretRotationManager(time_window_s=300, clock=lambda: now[0])
    tok = mgr.time_token()
    assert len(tok) == 16
    assert mgr.verify_time_token(tok)
    now[0] += 300
    assert mgr.verify_time_token(tok)
    now[0] += 300
    assert not mgr.verify_time_token(tok)
    assert not mgr.verify_time_token(None)


def test_time_token_bound_to_credential():
    mgr = SecretRotationManager(clock=lambda: 5000.0)
    tok = mgr.time_token()
    mgr.rotate()
    assert not mgr.verify_time_token(tok)
