from messaging.fingerprint import fingerprint


def test_fingerprint_known_values() -> None:
    assert fingerprint("") == "0"
    assert fingerprint("a") == "2p"  # 97
    assert fingerprint("ab") == "2e9"  # 97 * 31 + 98


def test_fingerprint_is_deterministic() -> None:
    text = "Hello there! How can I help?"
    assert fingerprint(text) == fingerprint(text)
    assert fingerprint(text) != fingerprint(text + " ")


def test_fingerprint_stays_within_32_bits() -> None:
    value = int(fingerprint("x" * 5000), 36)
    assert 0 <= value < 2 ** 32


def test_fingerprint_handles_unicode() -> None:
    assert fingerprint("こんにちは 👋") == fingerprint("こんにちは 👋")
    assert fingerprint("こんにちは") != fingerprint("こんばんは")
