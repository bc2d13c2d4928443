"""
Passenger validation, the gate out of the PASSENGERS step.

Checks presence and shape only. Errors are collected per passenger so the
form can point at every problem at once; nothing is ever cleared.
"""

from typing import Dict, List
import re

from farehold.errors import ValidationError
from farehold.types import PassengerForm

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
# E.164: leading +, no leading zero in the country code, 8-15 digits in all
E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")

REQUIRED_FIELDS = ("title", "given_name", "family_name", "gender", "born_on")


def format_phone(country_code: str, number: str) -> str:
    """Country calling code plus the digits of the local number"""
    code = (country_code or "").strip()
    if code and not code.startswith("+"):
        code = f"+{code}"
    digits = re.sub(r"\D", "", number or "")
    return f"{code}{digits}"


def validate_passenger(form: PassengerForm) -> List[str]:
    """Field names that are missing or malformed, in form order."""
    errors: List[str] = []

    for field in REQUIRED_FIELDS:
        if not str(getattr(form, field) or "").strip():
            errors.append(field)

    if not EMAIL_PATTERN.match(form.email.strip()):
        errors.append("email")

    if not form.phone_number.strip() or not E164_PATTERN.match(
            format_phone(form.phone_country_code, form.phone_number)):
        errors.append("phone_number")

    return errors


def collect_errors(forms: List[PassengerForm]) -> Dict[int, List[str]]:
    errors: Dict[int, List[str]] = {}
    for idx, form in enumerate(forms):
        problems = validate_passenger(form)
        if problems:
            errors[idx] = problems
    return errors


def validate_passengers(forms: List[PassengerForm]) -> None:
    """Raise ``ValidationError`` unless every passenger is complete."""
    if not forms:
        raise ValidationError({0: ["passengers"]})
    errors = collect_errors(forms)
    if errors:
        raise ValidationError(errors)
