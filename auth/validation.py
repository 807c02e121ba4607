"""
auth/validation.py -- Account-creation rules, enforced server-side.

Pure and deterministic: the same input always yields the same verdict, and
nothing here touches storage. Uniqueness is NOT checked here -- the
credential store's UNIQUE constraints are the authoritative gate, which also
settles races between concurrent signups.

Any client-side mirror of these rules is a convenience only.
"""

from __future__ import annotations

import re

from auth.errors import InvalidPhoneFormat, WeakPassword

MIN_PASSWORD_LENGTH = 6

# 3-digit prefix, 4-digit block, 4-digit block, hyphen separated: 010-1234-5678
PHONE_PATTERN = re.compile(r"\d{3}-\d{4}-\d{4}", re.ASCII)


class SignupValidator:
    def __init__(self, min_password_length: int = MIN_PASSWORD_LENGTH) -> None:
        self.min_password_length = min_password_length

    def validate_password(self, raw_password: str) -> None:
        if not isinstance(raw_password, str) or len(raw_password) < self.min_password_length:
            raise WeakPassword(f"Password must be at least {self.min_password_length} characters.")

    def normalize_phone(self, raw_phone: str) -> str:
        """Return the phone number in canonical form or raise InvalidPhoneFormat."""
        if not isinstance(raw_phone, str):
            raise InvalidPhoneFormat()
        phone = raw_phone.strip()
        if PHONE_PATTERN.fullmatch(phone) is None:
            raise InvalidPhoneFormat()
        return phone

    def validate(self, raw_password: str, raw_phone: str) -> str:
        """Check both signup rules; return the normalized phone number.

        The password rule is checked first, so a request failing both rules
        reports WeakPassword.
        """
        self.validate_password(raw_password)
        return self.normalize_phone(raw_phone)
