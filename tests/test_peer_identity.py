import base64

from peer_identity import ID_ALPHABET, IdentityIssuer


def test_alphabet_has_64_symbols():
    assert len(set(ID_ALPHABET)) == 64


def test_issue_id_uses_alphabet_and_length():
    for length in (1, 16, 40):
        peer_id = IdentityIssuer.issue_id(length)
        assert len(peer_id) == length
        assert set(peer_id) <= set(ID_ALPHABET)


def test_issued_ids_are_not_repeated():
    ids = {IdentityIssuer.issue_id(16) for _ in range(500)}
    assert len(ids) == 500


def test_validate_id_accepts_alphanumeric_of_exact_length():
    assert IdentityIssuer.validate_id("Abcdefgh12345678", 16)
    assert not IdentityIssuer.validate_id("Abcdefgh1234567", 16)
    assert not IdentityIssuer.validate_id("Abcdefgh123456789", 16)


def test_validate_id_rejects_punctuation_from_issuing_alphabet():
    # issued ids may contain '_' and '$', recovery does not accept them
    assert not IdentityIssuer.validate_id("Abcdefgh1234567_", 16)
    assert not IdentityIssuer.validate_id("Abcdefgh1234567$", 16)


def test_validate_id_rejects_missing_values():
    assert not IdentityIssuer.validate_id(None, 16)
    assert not IdentityIssuer.validate_id("", 16)


def test_derive_key_is_deterministic_per_secret():
    issuer = IdentityIssuer("s3cret")
    again = IdentityIssuer("s3cret")
    assert issuer.derive_key("peer-a") == issuer.derive_key("peer-a")
    assert issuer.derive_key("peer-a") == again.derive_key("peer-a")
    assert issuer.derive_key("peer-a") != issuer.derive_key("peer-b")


def test_derive_key_is_base64_sha256():
    key = IdentityIssuer("s3cret").derive_key("peer-a")
    assert len(base64.b64decode(key)) == 32


def test_rotating_secret_changes_keys():
    assert IdentityIssuer("one").derive_key("peer-a") != IdentityIssuer("two").derive_key("peer-a")


def test_missing_secret_falls_back_to_random_per_issuer():
    first, second = IdentityIssuer(None), IdentityIssuer(None)
    assert first.derive_key("peer-a") != second.derive_key("peer-a")


def test_verify_key():
    issuer = IdentityIssuer(b"bytes-secret")
    key = issuer.derive_key("peer-a")
    assert issuer.verify_key("peer-a", key)
    assert not issuer.verify_key("peer-b", key)
    assert not issuer.verify_key("peer-a", None)
    assert not issuer.verify_key("peer-a", "ünïcode")


def test_non_string_credentials_never_verify():
    issuer = IdentityIssuer("s3cret")
    assert not issuer.verify_key("peer-a", 123)
    assert not issuer.verify_key("peer-a", ["key"])
    assert not IdentityIssuer.validate_id(["Abcdefgh12345678"], 16)
    assert not IdentityIssuer.validate_id(1234567890123456, 16)
