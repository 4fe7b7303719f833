from authlane.service.passwords import PasswordHashing
from authlane.service.validation import is_strong_password, is_valid_email, normalize_email


def test_hash_and_verify():
    hashing = PasswordHashing(time_cost=1)
    digest = hashing.hash("Str0ngPassw0rd")

    assert digest.startswith("$argon2id$")
    assert hashing.verify(digest, "Str0ngPassw0rd") is True
    assert hashing.verify(digest, "str0ngpassw0rd") is False


def test_same_password_hashes_differently():
    hashing = PasswordHashing(time_cost=1)
    assert hashing.hash("Str0ngPassw0rd") != hashing.hash("Str0ngPassw0rd")


def test_unusable_digest_does_not_raise():
    hashing = PasswordHashing(time_cost=1)
    assert hashing.verify("not-a-hash", "Str0ngPassw0rd") is False


def test_burn_verify_returns_nothing():
    assert PasswordHashing(time_cost=1).burn_verify("anything") is None


def test_email_rules():
    assert normalize_email("  A@B.Example ") == "a@b.example"
    assert is_valid_email("first.last+tag@sub.example.org")
    assert not is_valid_email("no-at-sign.example.com")
    assert not is_valid_email("user@nodot")
    assert not is_valid_email("user@example.c")


def test_password_strength_counts_characters():
    assert is_strong_password("Abcdefg1")
    assert not is_strong_password("Abcdef1")
    # Non-ASCII letters count toward length but not the case classes
    assert is_strong_password("Äbcdef1A")
    assert not is_strong_password("ÄÖÜäöü12")
