"""
PHI Protection Service.

Masks Protected Health Information and personal identifiers before they
reach audit payloads or log lines (HIPAA minimum-necessary rule).
"""

import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class PHICategory(str, Enum):
    """Identifier categories handled by the masker."""

    NAME = "name"
    ADDRESS = "address"
    DATES = "dates"
    PHONE = "phone"
    EMAIL = "email"
    NATIONAL_ID = "national_id"
    DOCUMENT_NUMBER = "document_number"
    MEDICAL_RECORD = "medical_record"
    HEALTH = "health"


class PHIField(BaseModel):
    """Definition of a PHI field."""

    name: str
    category: PHICategory
    mask_pattern: Optional[str] = None  # e.g., "***-**-{last4}"


# Standard PHI field definitions
STANDARD_PHI_FIELDS: dict[str, PHIField] = {
    "ssn": PHIField(name="ssn", category=PHICategory.NATIONAL_ID, mask_pattern="***-**-{last4}"),
    "cpf": PHIField(name="cpf", category=PHICategory.NATIONAL_ID, mask_pattern="*******{last4}"),
    "rg": PHIField(name="rg", category=PHICategory.NATIONAL_ID, mask_pattern="****{last4}"),
    "document_number": PHIField(
        name="document_number", category=PHICategory.DOCUMENT_NUMBER, mask_pattern="****{last4}"
    ),
    "id_number": PHIField(
        name="id_number", category=PHICategory.DOCUMENT_NUMBER, mask_pattern="****{last4}"
    ),
    "first_name": PHIField(name="first_name", category=PHICategory.NAME, mask_pattern="{first1}****"),
    "last_name": PHIField(name="last_name", category=PHICategory.NAME, mask_pattern="{first1}****"),
    "full_name": PHIField(name="full_name", category=PHICategory.NAME, mask_pattern="{first1}****"),
    "name": PHIField(name="name", category=PHICategory.NAME, mask_pattern="{first1}****"),
    "birth_date": PHIField(name="birth_date", category=PHICategory.DATES, mask_pattern="****-**-**"),
    "date_of_birth": PHIField(name="date_of_birth", category=PHICategory.DATES, mask_pattern="****-**-**"),
    "street": PHIField(name="street", category=PHICategory.ADDRESS, mask_pattern="****"),
    "address": PHIField(name="address", category=PHICategory.ADDRESS, mask_pattern="****"),
    "postal_code": PHIField(name="postal_code", category=PHICategory.ADDRESS, mask_pattern="****"),
    "phone": PHIField(name="phone", category=PHICategory.PHONE, mask_pattern="(***) ***-{last4}"),
    "phone_primary": PHIField(
        name="phone_primary", category=PHICategory.PHONE, mask_pattern="(***) ***-{last4}"
    ),
    "email": PHIField(name="email", category=PHICategory.EMAIL, mask_pattern="{first2}****@****"),
    "medical_record_number": PHIField(
        name="medical_record_number",
        category=PHICategory.MEDICAL_RECORD,
        mask_pattern="MRN-****{last4}",
    ),
    "chronic_conditions": PHIField(name="chronic_conditions", category=PHICategory.HEALTH, mask_pattern="****"),
    "current_medications": PHIField(name="current_medications", category=PHICategory.HEALTH, mask_pattern="****"),
    "allergies": PHIField(name="allergies", category=PHICategory.HEALTH, mask_pattern="****"),
    "family_history": PHIField(name="family_history", category=PHICategory.HEALTH, mask_pattern="****"),
}

_TEXT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("cpf", re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b")),
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("phone", re.compile(r"\b(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    ("date", re.compile(r"\b(?:\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{2}-\d{2})\b")),
]


class PHIProtectionService:
    """Service for PHI masking and redaction."""

    def __init__(self, extra_fields: list[PHIField] | None = None):
        self._field_definitions = STANDARD_PHI_FIELDS.copy()
        for field in extra_fields or []:
            self.register_field(field)

    def register_field(self, field: PHIField) -> None:
        """Register a custom PHI field definition."""
        self._field_definitions[field.name] = field

    def is_phi_field(self, field_name: str) -> bool:
        """Check if a field contains PHI."""
        return field_name in self._field_definitions

    def mask_value(self, field_name: str, value: str) -> str:
        """Mask a PHI value for display/logging."""
        if not value:
            return value

        field_def = self._field_definitions.get(field_name)
        if not field_def or not field_def.mask_pattern:
            # Default masking - show first and last char
            if len(value) <= 2:
                return "*" * len(value)
            return value[0] + "*" * (len(value) - 2) + value[-1]

        pattern = field_def.mask_pattern

        if "{last4}" in pattern:
            last4 = value[-4:] if len(value) > 4 else "****"
            pattern = pattern.replace("{last4}", last4)

        if "{first1}" in pattern:
            pattern = pattern.replace("{first1}", value[0])

        if "{first2}" in pattern:
            pattern = pattern.replace("{first2}", value[:2] if len(value) > 2 else "**")

        return pattern

    def mask_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        """Recursively mask PHI fields and redact identifiers in free text."""
        result: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                result[key] = None
            elif self.is_phi_field(key):
                if isinstance(value, (list, dict)):
                    result[key] = self.mask_value(key, "collection")
                else:
                    result[key] = self.mask_value(key, str(value))
            else:
                result[key] = self._mask_any(value)
        return result

    def _mask_any(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, list):
            return [self._mask_any(item) for item in value]
        if isinstance(value, str):
            return self.redact_text(value)
        return value

    def detect_phi(self, text: str) -> list[tuple[str, str, int, int]]:
        """Detect potential identifiers in unstructured text.

        Returns:
            Non-overlapping (category, matched_text, start, end) tuples
        """
        findings: list[tuple[str, str, int, int]] = []
        for category, pattern in _TEXT_PATTERNS:
            for match in pattern.finditer(text):
                overlaps = any(
                    match.start() < end and start < match.end()
                    for _, _, start, end in findings
                )
                if not overlaps:
                    findings.append((category, match.group(), match.start(), match.end()))
        return findings

    def redact_text(self, text: str) -> str:
        """Redact identifiers from unstructured text."""
        findings = self.detect_phi(text)

        # Replace from the end so earlier offsets stay valid
        findings.sort(key=lambda x: x[2], reverse=True)

        result = text
        for category, _, start, end in findings:
            result = result[:start] + f"[{category.upper()}_REDACTED]" + result[end:]

        return result

