"""
Content Fingerprint - Short Text Hashes

Produces a short, stable hash of message text. Used by the loop guard to
recognise the bot's own replies when the platform echoes them back.

The hash is a 32-bit rolling hash, not a cryptographic digest. It is fine for
a short-lived, per-conversation key space and should not be treated as
collision-free anywhere else.
"""

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_MASK = 0xFFFFFFFF


def _to_base36(value: int) -> str:
    """Encode a non-negative integer in base 36."""
    if value == 0:
        return "0"

    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_ALPHABET[remainder])
    return "".join(reversed(digits))


def fingerprint(text: str) -> str:
    """
    Compute the fingerprint of a message text.

    Args:
        text: Message text (may be empty)

    Returns:
        Base-36 encoded 32-bit hash
    """
    value = 0
    for char in text or "":
        value = (value * 31 + ord(char)) & _MASK
    return _to_base36(value)
