"""
Sanitizers and validators for untrusted content.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import bleach
from bleach import html5lib_shim
from pydantic import BaseModel, Field

ALLOWED_TAGS = frozenset({
    "p", "br", "strong", "em", "u", "ol", "ul", "li",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "blockquote", "code", "pre",
    "a", "img", "iframe",
})

ALLOWED_ATTRIBUTES = [
    "href", "target", "src", "alt", "title",
    "width", "height", "frameborder", "allowfullscreen",
]

ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})

# Elements whose content is code, not text; dropped whole before cleaning
RAW_TEXT_ELEMENTS = frozenset({"script", "style"})

EMBED_SCHEMES = frozenset({"http", "https"})

# Characters browsers rewrite or drop inside http(s) URLs
_AMBIGUOUS_URL_CHARS = re.compile(r"[\\\x00-\x20\x7f]")

_TEXT_STRIP = re.compile(r"[<>\"']")

_YOUTUBE_URL = re.compile(
    r"^(?:https?://)?(?:www\.)?"
    r"(?:youtube\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?)/|\S*?[?&]v=)|youtu\.be/)"
    r"([a-zA-Z0-9_-]{11})"
)
_GOOGLE_DRIVE_URL = re.compile(
    r"^https://(?:drive|docs)\.google\.com/"
    r"(?:file/d/|document/d/|presentation/d/|spreadsheets/d/)"
    r"([a-zA-Z0-9_-]+)"
)

_EMAIL = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_PHONE = re.compile(r"\+?[1-9][0-9]{0,15}")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")

_SLUG_INVALID = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


class ContentSecurityConfig(BaseModel):
    """Limits and allow-lists for untrusted content."""
    max_file_size: int = Field(2 * 1024 * 1024, description="Max upload size in bytes")
    allowed_mime_types: List[str] = Field(default_factory=lambda: [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
    ])
    allowed_embed_domains: List[str] = Field(default_factory=lambda: [
        "youtube.com",
        "www.youtube.com",
        "youtu.be",
        "drive.google.com",
        "docs.google.com",
        "vimeo.com",
        "player.vimeo.com",
    ])
    max_input_length: int = Field(10000, description="Default sanitize_text truncation")


@dataclass
class UploadedFile:
    """Metadata of a file about to be stored."""
    filename: str
    content_type: Optional[str]
    size: int


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None


def drop_raw_text_elements(html: str) -> str:
    """Remove ``script``/``style`` elements and their content.

    Parsed with the same HTML5 tokenizer bleach cleans with, so only real
    elements are removed; the same text inside an attribute value or a
    comment is left for the cleaner.
    """
    parser = html5lib_shim.BleachHTMLParser(
        tags=None,
        strip=False,
        consume_entities=False,
        namespaceHTMLElements=False
    )
    fragment = parser.parseFragment(html)

    for parent in list(fragment.iter()):
        for child in list(parent):
            if isinstance(child.tag, str) and child.tag.lower() in RAW_TEXT_ELEMENTS:
                _remove_keeping_tail(parent, child)

    walker = html5lib_shim.getTreeWalker("etree")
    serializer = html5lib_shim.BleachHTMLSerializer(
        quote_attr_values="always",
        omit_optional_tags=False,
        escape_lt_in_attrs=True,
        resolve_entities=False,
        sanitize=False,
        alphabetical_attributes=False
    )
    return serializer.render(walker(fragment))


def _remove_keeping_tail(parent, child):
    if child.tail:
        index = list(parent).index(child)
        if index:
            previous = parent[index - 1]
            previous.tail = (previous.tail or "") + child.tail
        else:
            parent.text = (parent.text or "") + child.tail
    parent.remove(child)


class ContentSecurityValidator:
    """Stateless sanitizers and validators for user-supplied content.

    ``validate_file`` and ``validate_embed_url`` take optional overrides
    that are merged onto the configured defaults for that call only.
    """

    def __init__(self, config: Optional[ContentSecurityConfig] = None):
        self.config = config or ContentSecurityConfig()

    def _merged(self, overrides: Optional[Dict[str, Any]]) -> ContentSecurityConfig:
        if not overrides:
            return self.config
        return self.config.model_copy(update=overrides)

    def sanitize_html(self, html: str) -> str:
        """Reduce HTML to the allowed tags, attributes and URL schemes."""
        if not html:
            return ""
        return bleach.clean(
            drop_raw_text_elements(html),
            tags=ALLOWED_TAGS,
            attributes=ALLOWED_ATTRIBUTES,
            protocols=ALLOWED_PROTOCOLS,
            strip=True,
            strip_comments=True,
        )

    def sanitize_text(self, text: str, max_length: Optional[int] = None) -> str:
        """Truncate, trim and drop angle brackets and quotes."""
        if not text:
            return ""
        limit = max_length or self.config.max_input_length
        return _TEXT_STRIP.sub("", text[:limit].strip())

    def validate_file(self, file: UploadedFile, overrides: Optional[Dict[str, Any]] = None) -> ValidationResult:
        cfg = self._merged(overrides)

        if file.size > cfg.max_file_size:
            return ValidationResult(
                valid=False,
                error=f"File size exceeds limit of {cfg.max_file_size / (1024 * 1024):g}MB"
            )

        if not file.content_type:
            return ValidationResult(valid=False, error="File type is missing")

        if file.content_type not in cfg.allowed_mime_types:
            return ValidationResult(
                valid=False,
                error=f"File type '{file.content_type}' is not allowed"
            )

        return ValidationResult(valid=True)

    def validate_embed_url(self, url: str, overrides: Optional[Dict[str, Any]] = None) -> ValidationResult:
        """Accept only URLs on allow-listed hosts, in the host family's expected shape."""
        cfg = self._merged(overrides)

        if not url or _AMBIGUOUS_URL_CHARS.search(url):
            return ValidationResult(valid=False, error="Invalid URL format")

        try:
            parsed = urlparse(url)
            hostname = parsed.hostname
        except (TypeError, ValueError):
            return ValidationResult(valid=False, error="Invalid URL format")

        if not parsed.scheme or not hostname or "@" in parsed.netloc:
            return ValidationResult(valid=False, error="Invalid URL format")

        scheme = parsed.scheme.lower()
        if scheme not in EMBED_SCHEMES:
            return ValidationResult(valid=False, error=f"Embed URL scheme '{scheme}' is not allowed")

        hostname = hostname.lower()
        domains = [d.lower() for d in cfg.allowed_embed_domains]
        if not any(hostname == d or hostname.endswith(f".{d}") for d in domains):
            return ValidationResult(valid=False, error=f"Embed domain '{hostname}' is not allowed")

        if "youtube.com" in hostname or "youtu.be" in hostname:
            if not _YOUTUBE_URL.match(url):
                return ValidationResult(valid=False, error="Invalid YouTube URL format")

        elif "drive.google.com" in hostname or "docs.google.com" in hostname:
            if not _GOOGLE_DRIVE_URL.match(url):
                return ValidationResult(valid=False, error="Invalid Google Drive URL format")

        return ValidationResult(valid=True)

    @staticmethod
    def validate_email(email: str) -> bool:
        return bool(email) and _EMAIL.fullmatch(email) is not None

    @staticmethod
    def validate_phone(phone: str) -> bool:
        if not phone:
            return False
        return _PHONE.fullmatch(_PHONE_SEPARATORS.sub("", phone)) is not None

    @staticmethod
    def generate_slug(text: str) -> str:
        slug = _SLUG_INVALID.sub("", (text or "").lower().strip())
        slug = _WHITESPACE.sub("-", slug)
        slug = _HYPHENS.sub("-", slug)
        return slug.strip("-")
