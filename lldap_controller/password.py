"""Credential generation for service users."""

import secrets
import string
from random import Random
from typing import Optional

PASSWORD_LENGTH = 32
MIN_PASSWORD_LENGTH = 16

CHARACTER_CLASSES = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
)


def generate_password(length: int = PASSWORD_LENGTH, rng: Optional[Random] = None) -> str:
    """
    Generate a random password containing every character class at least once

    Args:
        length: Password length, at least MIN_PASSWORD_LENGTH
        rng: Random source; defaults to the operating system's CSPRNG

    Returns:
        The generated password
    """
    if length < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password length must be at least {MIN_PASSWORD_LENGTH}")

    rng = rng or secrets.SystemRandom()
    alphabet = "".join(CHARACTER_CLASSES)
    while True:
        password = "".join(rng.choice(alphabet) for _ in range(length))
        if all(any(c in chars for c in password) for chars in CHARACTER_CLASSES):
            return password
