import pytest

from cardsync.crypto import PasswordCipher, derive_key
from cardsync.errors import InvalidCiphertext


def test_round_trip() -> None:
    cipher = PasswordCipher("server-secret")

    sealed = cipher.encrypt("s3cret")

    assert sealed != "s3cret"
    assert cipher.decrypt(sealed) == "s3cret"


def test_sealing_is_randomized() -> None:
    cipher = PasswordCipher("server-secret")

    assert cipher.encrypt("s3cret") != cipher.encrypt("s3cret")


def test_other_secret_cannot_open() -> None:
    sealed = PasswordCipher("server-secret").encrypt("s3cret")

    with pytest.raises(InvalidCiphertext):
        PasswordCipher("rotated-secret").decrypt(sealed)


@pytest.mark.parametrize("blob", ["", "not-a-token", "gAAAAAB" + "x" * 40, "ünïcode"])
def test_malformed_blobs(blob: str) -> None:
    with pytest.raises(InvalidCiphertext):
        PasswordCipher("server-secret").decrypt(blob)


def test_key_derivation_is_stable() -> None:
    assert derive_key("a") == derive_key("a")
    assert derive_key("a") != derive_key("b")
    assert len(derive_key("a")) == 44


def test_empty_secret_is_rejected() -> None:
    with pytest.raises(ValueError):
        PasswordCipher("")


def test_repr_hides_key() -> None:
    assert "server-secret" not in repr(PasswordCipher("server-secret"))
