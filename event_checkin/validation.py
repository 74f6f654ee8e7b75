"""
Email validation for attendee rows

Default implementation of the email-validation capability the normalizer
depends on. Address syntax is checked by ``email_validator``; on top of
that, addresses carrying markup or SQL fragments are rejected.
"""

import html
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from email_validator import EmailNotValidError, validate_email

DANGEROUS_CHARS = re.compile(r"<|>|&lt;|&gt;|javascript:|on\w+=", re.IGNORECASE)
SQL_INJECTION_PATTERNS = re.compile(
    r"('|\"|;|--|\*|/\*|\*/|xp_|sp_|union|select|insert|update|delete|drop"
    r"|create|alter|exec|execute)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one email address"""
    valid: bool
    sanitized: str
    error: Optional[str] = None


@dataclass
class MultipleValidationResult:
    """Outcome of validating a separated list of addresses"""
    valid: List[str] = field(default_factory=list)
    invalid: List[Dict[str, str]] = field(default_factory=list)


class EmailValidator:
    """
    Validates and sanitizes email addresses

    ``validate`` is the entry point used during normalization; the other
    methods are building blocks exposed for callers that only need one
    of the checks.
    """

    def is_valid(self, email) -> bool:
        """
        Check whether a string is an acceptable email address

        Args:
            email: Candidate address

        Returns:
            True if the address passes every check
        """
        if not email or not isinstance(email, str):
            return False

        trimmed = email.strip()
        if not trimmed:
            return False
        if DANGEROUS_CHARS.search(trimmed) or SQL_INJECTION_PATTERNS.search(trimmed):
            return False

        try:
            validate_email(trimmed, check_deliverability=False)
        except EmailNotValidError:
            return False
        return True

    def sanitize(self, email) -> str:
        """Trim, lowercase and HTML-escape an address"""
        if not email or not isinstance(email, str):
            return ""
        return html.escape(email.strip().lower(), quote=False)

    def validate(self, email) -> ValidationResult:
        """
        Validate an address and report why it failed

        Args:
            email: Candidate address

        Returns:
            ValidationResult with the sanitized form and an error message
        """
        sanitized = self.sanitize(email)

        if not email:
            return ValidationResult(False, "", "Email is required")
        if not sanitized:
            return ValidationResult(False, "", "Email cannot be empty")
        if DANGEROUS_CHARS.search(email) or SQL_INJECTION_PATTERNS.search(email):
            return ValidationResult(False, sanitized, "Email contains invalid characters")
        if not self.is_valid(email):
            return ValidationResult(
                False,
                sanitized,
                "Invalid email format. Please use format: user@example.com",
            )
        return ValidationResult(True, sanitized)

    def validate_multiple(self, emails, separator: str = ",") -> MultipleValidationResult:
        """
        Validate a separated list of addresses

        Args:
            emails: String containing several addresses
            separator: Separator between addresses

        Returns:
            MultipleValidationResult with sanitized valid addresses and
            the rejected ones with their reasons
        """
        result = MultipleValidationResult()
        if not emails or not isinstance(emails, str):
            return result

        for candidate in (part.strip() for part in emails.split(separator)):
            if not candidate:
                continue
            if self.is_valid(candidate):
                result.valid.append(self.sanitize(candidate))
            else:
                result.invalid.append({
                    "email": candidate,
                    "reason": self.validate(candidate).error,
                })
        return result
