"""
Input Sanitization and Attack-Pattern Detection

This module provides the sanitizers applied to validated CRM input before it
is persisted, and the attack-pattern scanner that rejects hostile input
outright. Detection and sanitization are deliberately separate: input that
matches any signature is refused as a whole and never stripped and accepted.

Features:
- Fixed signature list for script and event-handler injection, protocol
  scheme injection, SQL and NoSQL injection, path traversal and shell
  metacharacter abuse
- Recursive payload scanning over mappings and sequences (keys and values)
- Rich text sanitization through bleach with a small tag whitelist
- Plain text escaping of the five HTML metacharacters
- Email, phone, URL and filename normalization
"""

import html
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern
from urllib.parse import unquote, urlparse

import bleach
import structlog

logger = structlog.get_logger(__name__)


class SanitizationError(Exception):
    """Base exception for sanitization failures."""


class InvalidInputError(SanitizationError):
    """Raised when a value cannot be sanitized into an acceptable form."""


ALLOWED_TAGS = frozenset({'b', 'i', 'em', 'strong', 'a', 'p', 'br', 'ul', 'ol', 'li'})
ALLOWED_ATTRIBUTES = {'a': ['href', 'title', 'target', 'rel']}
ALLOWED_PROTOCOLS = frozenset({'http', 'https', 'mailto'})
ALLOWED_URL_SCHEMES = frozenset({'http', 'https'})

MAX_FILENAME_LENGTH = 255


@dataclass(frozen=True)
class AttackSignature:
    name: str
    category: str
    severity: str
    pattern: Pattern


@dataclass(frozen=True)
class AttackMatch:
    """One signature hit. ``field`` is a dotted path into the scanned payload."""

    signature: str
    category: str
    severity: str
    field: str


def _sig(name: str, category: str, severity: str, pattern: str) -> AttackSignature:
    return AttackSignature(name, category, severity, re.compile(pattern, re.IGNORECASE))


ATTACK_SIGNATURES = (
    # Script and markup injection
    _sig('script_tag', 'xss', 'high', r'<\s*/?\s*script\b'),
    _sig('dangerous_tag', 'xss', 'high',
         r'<\s*(?:iframe|object|embed|applet|meta|link|base|form|svg)\b'),
    _sig('event_handler_in_tag', 'xss', 'high', r'<[^>]*\bon[a-z]+\s*='),
    _sig('event_handler', 'xss', 'high',
         r'\bon(?:load|error|click|dblclick|focus|blur|submit|change|input|'
         r'mouse\w+|key\w+|pointer\w+|animation\w+|toggle)\s*='),
    _sig('css_expression', 'xss', 'high', r'expression\s*\('),
    # Protocol scheme injection
    _sig('javascript_scheme', 'protocol', 'high', r'javascript\s*:'),
    _sig('vbscript_scheme', 'protocol', 'high', r'vbscript\s*:'),
    _sig('data_html_scheme', 'protocol', 'high', r'data\s*:\s*text/html'),
    # SQL injection
    _sig('sql_union_select', 'sql_injection', 'critical', r'\bunion\s+(?:all\s+)?select\b'),
    _sig('sql_select_from', 'sql_injection', 'critical',
         r'\bselect\s+(?:\*|[\w\s,]+?)\s+from\s+\w+\s+where\b|\bselect\s+\*\s+from\b'),
    _sig('sql_insert_into', 'sql_injection', 'critical',
         r'\binsert\s+into\s+\S+\s*(?:\(|values\b)'),
    _sig('sql_drop_truncate', 'sql_injection', 'critical',
         r'\b(?:drop|truncate|alter)\s+(?:table|database|schema)\b'),
    _sig('sql_stacked_query', 'sql_injection', 'critical',
         r';\s*(?:drop|delete|insert|update|alter|truncate|exec|create|shutdown)\b'),
    _sig('sql_quote_terminator', 'sql_injection', 'critical', r"'\s*(?:;|--|#|/\*)"),
    _sig('sql_tautology', 'sql_injection', 'critical',
         r"'\s*or\s+'?\w+'?\s*=\s*'?\w+|\bor\s+1\s*=\s*1\b"),
    _sig('sql_procedure', 'sql_injection', 'critical', r'\bexec(?:ute)?\s+(?:xp_|sp_)\w+'),
    # NoSQL operator injection
    _sig('nosql_operator', 'nosql_injection', 'critical',
         r'\$(?:where|ne|eq|gt|gte|lt|lte|in|nin|regex|exists|expr|or|and|not)\b'),
    # Path traversal
    _sig('path_traversal', 'path_traversal', 'high', r'\.\.[/\\]'),
    _sig('encoded_path_traversal', 'path_traversal', 'high',
         r'(?:%2e%2e|\.\.)(?:%2f|%5c)|%2e%2e[/\\]'),
    # Shell metacharacters
    _sig('shell_substitution', 'command_injection', 'critical', r'\$\([^)]*\)|`[^`]*`'),
    _sig('shell_chain', 'command_injection', 'critical',
         r'(?:;|&&|\|\|?)\s*(?:cat|ls|rm|wget|curl|nc|netcat|bash|sh|zsh|chmod|chown|'
         r'whoami|uname|ping|nslookup|python\d?|perl|ruby|php)\b'),
)


class AttackPatternDetector:
    """
    Scan strings and structured payloads for attack signatures.

    The detector only reports. Callers decide to reject; the security
    middleware and ``secure_input`` always reject on any match.
    """

    def __init__(self, signatures=ATTACK_SIGNATURES, max_depth: int = 10):
        self.signatures = tuple(signatures)
        self.max_depth = max_depth

    def scan(self, value: Any, field: str = '') -> List[AttackMatch]:
        """Scan a single value; percent-encoded sequences are decoded first."""
        if not isinstance(value, str) or not value:
            return []

        candidates = {value}
        decoded = unquote(value)
        if decoded != value:
            candidates.add(decoded)

        matches = []
        for signature in self.signatures:
            if any(signature.pattern.search(candidate) for candidate in candidates):
                matches.append(AttackMatch(
                    signature=signature.name,
                    category=signature.category,
                    severity=signature.severity,
                    field=field,
                ))
        return matches

    def scan_payload(self, payload: Any, path: str = '', _depth: int = 0) -> List[AttackMatch]:
        """
        Recursively scan mappings, sequences and strings.

        Mapping keys are scanned as well as values, so operator keys such as
        ``$where`` are caught.
        """
        if _depth > self.max_depth:
            return [AttackMatch('nesting_depth', 'structure', 'medium', path)]

        if isinstance(payload, dict):
            matches = []
            for key, value in payload.items():
                child = f'{path}.{key}' if path else str(key)
                matches.extend(self.scan(str(key), child))
                matches.extend(self.scan_payload(value, child, _depth + 1))
            return matches

        if isinstance(payload, (list, tuple)):
            matches = []
            for index, item in enumerate(payload):
                matches.extend(self.scan_payload(item, f'{path}[{index}]', _depth + 1))
            return matches

        return self.scan(payload, path)

    def contains_attack(self, payload: Any) -> bool:
        return bool(self.scan_payload(payload))


attack_detector = AttackPatternDetector()


def contains_attack_patterns(payload: Any) -> bool:
    """Module-level convenience over the shared detector."""
    return attack_detector.contains_attack(payload)


def sanitize_html(content: Optional[str]) -> str:
    """
    Sanitize rich text against the tag whitelist.

    Tags outside ``ALLOWED_TAGS`` are stripped (their text kept), attributes
    outside ``ALLOWED_ATTRIBUTES`` dropped, and links limited to
    http, https and mailto.
    """
    if not content:
        return ''
    return bleach.clean(
        content,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True,
    ).strip()


def sanitize_text(text: Optional[str]) -> str:
    """Escape ``& < > " '`` and trim surrounding whitespace."""
    if text is None:
        return ''
    return html.escape(str(text).strip(), quote=True)


def sanitize_email(email: Optional[str]) -> str:
    if not email:
        return ''
    return re.sub(r'[^\w@.\-]', '', email.strip().lower())


def sanitize_phone(phone: Optional[str]) -> str:
    if not phone:
        return ''
    return re.sub(r'[^\d+\-\s()]', '', phone).strip()


def sanitize_url(url: Optional[str]) -> str:
    """
    Normalize a URL, accepting only http and https.

    Args:
        url: Candidate URL

    Returns:
        The trimmed URL, or an empty string for empty input

    Raises:
        InvalidInputError: If the URL has another scheme or no host
    """
    if not url or not url.strip():
        return ''
    candidate = url.strip()
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
        logger.warning("URL rejected during sanitization", scheme=parsed.scheme)
        raise InvalidInputError('Only http and https URLs are allowed')
    return candidate


def sanitize_filename(filename: Optional[str], max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Replace anything outside ``[A-Za-z0-9._-]`` with ``_``, collapse runs of
    underscores and cap the length while keeping the extension.
    """
    if not filename or not filename.strip():
        raise InvalidInputError('Filename cannot be empty')

    sanitized = re.sub(r'[^A-Za-z0-9._\-]', '_', filename.strip())
    sanitized = re.sub(r'_{2,}', '_', sanitized)
    # No hidden files or parent references
    sanitized = sanitized.lstrip('.')

    if len(sanitized) > max_length:
        if '.' in sanitized:
            name, ext = sanitized.rsplit('.', 1)
            ext = ext[:16]
            sanitized = f'{name[:max_length - len(ext) - 1]}.{ext}'
        else:
            sanitized = sanitized[:max_length]

    return sanitized or 'file'


SANITIZERS = {
    'html': sanitize_html,
    'text': sanitize_text,
    'email': sanitize_email,
    'phone': sanitize_phone,
    'url': sanitize_url,
    'filename': sanitize_filename,
}


def sanitize_fields(data: Dict[str, Any], rules: Dict[str, str]) -> Dict[str, Any]:
    """
    Apply the named sanitizer to each string field listed in ``rules``.

    Fields not listed, and non-string values, pass through unchanged.
    """
    cleaned = dict(data)
    for field, kind in rules.items():
        value = cleaned.get(field)
        if isinstance(value, str):
            cleaned[field] = SANITIZERS[kind](value)
        elif isinstance(value, list) and kind == 'text':
            cleaned[field] = [
                sanitize_text(item) if isinstance(item, str) else item for item in value
            ]
    return cleaned
