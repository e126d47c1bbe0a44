"""
URL Validation Utilities

Validation of submitted URLs and the canonical form used for archive
identity. Normalization drops the query string and fragment so that tracking
parameters never produce a second archive of the same page.
"""

import re
from urllib.parse import urlparse, urlunparse
from typing import Tuple, Optional
import logging


class URLValidator:
    """
    Validates and normalizes URLs for the archival process.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

        self.domain_pattern = re.compile(
            r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$'
        )

    def validate(self, url: str) -> Tuple[bool, str, str]:
        """
        Validate a URL for archival.

        A missing scheme defaults to ``https://``. ``file:`` and ``data:``
        URLs are accepted as-is for local captures.

        Args:
            url: The URL to validate

        Returns:
            Tuple of (is_valid, url_with_scheme, error_message)
        """
        if not url or not isinstance(url, str):
            return False, "", "URL cannot be empty"

        url = url.strip()
        parsed = urlparse(url)

        if parsed.scheme in ('file', 'data'):
            return True, url, ""

        if not parsed.scheme:
            url = 'https://' + url
            parsed = urlparse(url)
        elif parsed.scheme not in ('http', 'https'):
            return False, "", "URL must use HTTP or HTTPS protocol"

        if not parsed.netloc:
            return False, "", "URL must have a valid domain"

        host = (parsed.hostname or "").lower()
        if host != "localhost" and not self.domain_pattern.match(host):
            return False, "", "Invalid domain format"

        return True, url, ""

    def normalize(self, url: str) -> str:
        """
        Canonical form of a URL: lowercase scheme and host, default ports
        dropped, query string and fragment removed. Idempotent.
        """
        parsed = urlparse((url or "").strip())
        scheme = parsed.scheme.lower()
        if scheme in ('file', 'data'):
            return urlunparse((scheme, parsed.netloc, parsed.path, parsed.params, '', ''))

        netloc = parsed.netloc.lower()
        if scheme == 'http' and netloc.endswith(':80'):
            netloc = netloc[:-3]
        if scheme == 'https' and netloc.endswith(':443'):
            netloc = netloc[:-4]
        path = parsed.path or '/'
        return urlunparse((scheme, netloc, path, '', '', ''))


_validator_instance: Optional[URLValidator] = None


def get_validator() -> URLValidator:
    """Return the shared URLValidator instance."""
    global _validator_instance
    if _validator_instance is None:
        _validator_instance = URLValidator()
    return _validator_instance


def validate_url(url: str) -> Tuple[bool, str, str]:
    """
    Convenience wrapper used by the queue, CLI and GUI.
    Returns (is_valid, url_with_scheme, error_message).
    """
    return get_validator().validate(url)


def normalize_url(url: str) -> str:
    """Strip query and fragment; ``normalize_url(normalize_url(u)) == normalize_url(u)``."""
    return get_validator().normalize(url)
