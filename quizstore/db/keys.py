"""
Order-preserving encoding for composite keys

A key is a tuple of str/int parts. Encoded keys compare byte-wise in the
same order as the tuples they came from, so a lexicographic range over the
encoded form is an ordered scan over the logical keys.
"""

from typing import Tuple, Union

from quizstore.core.exceptions import ValidationException

KeyPart = Union[str, int]
Key = Tuple[KeyPart, ...]

TERMINATOR = "\x00"
INT_TAG = "i"
STR_TAG = "s"

_INT_OFFSET = 1 << 63
_INT_WIDTH = 16


def _encode_part(part: KeyPart) -> str:
    # bool is an int subclass but has no place in a key
    if isinstance(part, bool):
        raise ValidationException("Key parts must be str or int", details={"part": repr(part)})
    if isinstance(part, int):
        if not -_INT_OFFSET <= part < _INT_OFFSET:
            raise ValidationException("Integer key part out of range", details={"part": part})
        return f"{INT_TAG}{part + _INT_OFFSET:0{_INT_WIDTH}x}{TERMINATOR}"
    if isinstance(part, str):
        if TERMINATOR in part:
            raise ValidationException("Key parts may not contain NUL", details={"part": part})
        return f"{STR_TAG}{part}{TERMINATOR}"
    raise ValidationException("Key parts must be str or int", details={"part": repr(part)})


def encode_key(key: Key) -> str:
    """Encode a key tuple"""
    if not isinstance(key, tuple):
        raise ValidationException("Key must be a tuple", details={"key": repr(key)})
    return "".join(_encode_part(part) for part in key)


def decode_key(encoded: str) -> Key:
    """Inverse of encode_key"""
    parts = []
    for chunk in encoded.split(TERMINATOR)[:-1]:
        tag, body = chunk[0], chunk[1:]
        if tag == INT_TAG:
            parts.append(int(body, 16) - _INT_OFFSET)
        else:
            parts.append(body)
    return tuple(parts)


def prefix_range(prefix: Key) -> Tuple[str, str]:
    """
    Lexicographic bounds covering every key that starts with ``prefix``

    Returns ``(min, max)`` in ZRANGEBYLEX syntax. The prefix itself is
    included when it is a full key.
    """
    if not prefix:
        return "-", "+"
    encoded = encode_key(prefix)
    # keys under the prefix are encoded + <more parts>; bumping the final
    # terminator gives a bound above all of them
    upper = encoded[:-1] + chr(ord(TERMINATOR) + 1)
    return f"[{encoded}", f"({upper}"
