import pytest

from metro_events.common.auth import extract_bearer_token, require_bearer_token, verify_bearer_token
from metro_events.common.errors import AuthorizationError

SECRET = "s3cret-token-value"


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("bearer   abc ") == "abc"
    assert extract_bearer_token("Basic abc") is None
    assert extract_bearer_token("Bearer ") is None
    assert extract_bearer_token(None) is None


def test_verify_accepts_only_the_exact_secret():
    assert verify_bearer_token(f"Bearer {SECRET}", SECRET)
    assert not verify_bearer_token("Bearer x", SECRET)
    assert not verify_bearer_token("Bearer " + "x" * len(SECRET), SECRET)
    assert not verify_bearer_token(f"Bearer {SECRET}extra", SECRET)
    assert not verify_bearer_token(None, SECRET)


def test_unset_secret_rejects_everything():
    assert not verify_bearer_token("Bearer ", None)
    assert not verify_bearer_token("Bearer anything", "")


def test_require_bearer_token_raises_uniform_error():
    with pytest.raises(AuthorizationError, match="Unauthorized"):
        require_bearer_token("Bearer wrong", SECRET)
    require_bearer_token(f"Bearer {SECRET}", SECRET)
