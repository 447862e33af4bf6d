import pytest

from security import hash_secret, pwd_context, verify_secret, validate_password_strength


@pytest.mark.parametrize("secret", ["hunter2", "correct horse battery staple", "pässwörd", "x"])
def test_verify_accepts_the_hashed_secret(secret):
    assert verify_secret(secret, hash_secret(secret)) is True


def test_verify_rejects_a_different_secret():
    digest = hash_secret("open-sesame")
    assert verify_secret("open-sesame!", digest) is False
    assert verify_secret("Open-sesame", digest) is False


def test_digest_is_salted_and_never_the_plaintext():
    first = hash_secret("same-secret")
    second = hash_secret("same-secret")
    assert "same-secret" not in first
    assert first != second
    assert verify_secret("same-secret", first) and verify_secret("same-secret", second)


@pytest.mark.parametrize("digest", ["", "not-a-bcrypt-hash", "5e884898da28047151d0e56f8dc6292773603d0d"])
def test_verify_returns_false_on_malformed_digest(digest):
    assert verify_secret("password", digest) is False


def test_verify_rejects_empty_secret():
    assert verify_secret("", hash_secret("something")) is False


def test_password_strength():
    assert validate_password_strength("Sup3rSecret") == (True, "")
    assert validate_password_strength("short1A") == (False, "Account password needs at least 8 characters")
    assert validate_password_strength("alllowercase1") == (False, "Account password needs an uppercase letter")
    assert validate_password_strength("nodigitshere") == (
        False, "Account password needs an uppercase letter, a digit"
    )


def test_secrets_longer_than_72_bytes_are_compared_in_full():
    prefix = "A" * 72
    digest = hash_secret(prefix + "wrong")
    assert verify_secret(prefix + "right", digest) is False
    assert verify_secret(prefix + "wrong", digest) is True


def test_plain_bcrypt_digests_still_verify():
    legacy = pwd_context.handler("bcrypt").using(rounds=4).hash("Sup3rSecret")
    assert verify_secret("Sup3rSecret", legacy) is True
    assert verify_secret("Sup3rSecreT", legacy) is False
