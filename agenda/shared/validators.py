"""Shared validation utilities"""

import re
from typing import Optional


def normalize_whatsapp_number(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a Brazilian phone number to the digits-only E.164 form WhatsApp expects.

    Args:
        phone: Phone number string in various formats ("(11) 98888-7777", "+55 11 ...")

    Returns:
        Digits with country code (5511988887777), or None when the number is unusable
    """
    if not phone:
        return None

    digits = re.sub(r"\D", "", phone)
    if not digits:
        return None

    # Local numbers: DDD + 8 or 9 digits
    if len(digits) in (10, 11):
        digits = f"55{digits}"

    if len(digits) < 12 or len(digits) > 15:
        return None

    return digits


def validate_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and validate an email address; None when missing or malformed"""
    if not email:
        return None

    email = email.strip().lower()
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    if not re.match(email_pattern, email):
        return None

    return email
