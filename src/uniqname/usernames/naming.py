"""Username normalization and validity rules.

A valid username is 3-32 characters of lowercase letters, digits and
underscores, with at least one letter or digit.
"""

from __future__ import annotations

import random
import re
import string

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 32
USERNAME_CHARSET = string.ascii_lowercase + string.digits
SEPARATOR = "_"
BASE36 = string.digits + string.ascii_lowercase
PLACEHOLDER_ROOT = "user"

_DISALLOWED = re.compile(r"[^a-z0-9_]")
# At least one letter or digit; underscores alone do not make a name.
_VALID = re.compile(rf"^(?=_*[a-z0-9])[a-z0-9_]{{{USERNAME_MIN_LENGTH},{USERNAME_MAX_LENGTH}}}$")


def has_stem(name: str) -> bool:
    """True if ``name`` has something besides separators to build on."""
    return bool(name.strip(SEPARATOR))


def normalize_username(raw: str) -> str:
    """Lower-case, drop characters outside [a-z0-9_], truncate to the maximum length."""
    return _DISALLOWED.sub("", raw.strip().lower())[:USERNAME_MAX_LENGTH]


def is_valid_username(name: str) -> bool:
    return bool(_VALID.fullmatch(name))


def random_token(rng: random.Random, length: int, alphabet: str = USERNAME_CHARSET) -> str:
    return "".join(rng.choice(alphabet) for _ in range(length))


def placeholder_root(rng: random.Random) -> str:
    """Root used when the requested base has no usable characters."""
    return f"{PLACEHOLDER_ROOT}{SEPARATOR}{random_token(rng, 6)}"


def fit(root: str, tail: str = "", head: str = "", max_length: int = USERNAME_MAX_LENGTH) -> str:
    """Join head + root + tail, trimming the root so the result fits."""
    budget = max_length - len(head) - len(tail)
    if budget <= 0:
        return (head + tail)[:max_length]
    return f"{head}{root[:budget]}{tail}"


def to_base36(value: int) -> str:
    if value < 0:
        msg = f"Cannot encode negative value {value}"
        raise ValueError(msg)
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
        if value == 0:
            break
    return "".join(reversed(digits))
