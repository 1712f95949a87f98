"""
Courier Input Validators
========================

Validation for source URLs entered by operators.
"""

from urllib.parse import urlsplit

from .exceptions import ValidationError, ErrorCode


class URLValidator:
    """Source URL validation."""

    ALLOWED_SCHEMES = {"http", "https"}
    MAX_URL_LENGTH = 2048

    @classmethod
    def validate_source_url(cls, url: str) -> str:
        """Validate a feed source URL before registering it.

        Args:
            url: URL to validate

        Returns:
            The URL with surrounding whitespace removed

        Raises:
            ValidationError: If URL is missing, too long, not http(s) or hostless
        """
        if not url or not isinstance(url, str):
            raise ValidationError(
                "URL is required and must be a string",
                error_code=ErrorCode.VALIDATION_REQUIRED_FIELD,
                field_name="url",
            )

        url = url.strip()

        if len(url) > cls.MAX_URL_LENGTH:
            raise ValidationError(
                f"URL longer than {cls.MAX_URL_LENGTH} characters",
                error_code=ErrorCode.VALIDATION_OUT_OF_RANGE,
                field_name="url",
            )

        try:
            parsed = urlsplit(url)
        except ValueError as e:
            raise ValidationError(
                f"Invalid URL format: {e}",
                field_name="url",
            ) from e

        if parsed.scheme.lower() not in cls.ALLOWED_SCHEMES:
            raise ValidationError(
                "URL scheme must be http or https",
                field_name="url",
            )

        if not parsed.hostname:
            raise ValidationError(
                "URL must include a hostname",
                field_name="url",
            )

        return url
