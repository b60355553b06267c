"""
Text helpers shared by embedding, classification and queue ingestion.
"""
import re
from typing import FrozenSet, Optional
from urllib.parse import urlparse

_TOKEN_RE = re.compile(r"[^\W\d_]{3,}", re.UNICODE)
_EMAIL_IN_BRACKETS = re.compile(r"<([^>]+)>")
_DISPLAY_NAME = re.compile(r'^"?([^"<]+)"?\s*<')

# Short function words that carry no topical signal.
STOPWORDS: FrozenSet[str] = frozenset(
    """
    the and for are but not you all any can had her was one our out has him his
    how its may new now old see two way who did get let say she too use from
    that this with have will your they them then than there their what when
    which while where into over also more most some such only just about after
    before been being could would should these those other under very each
    der die das und ist ein eine einer eines nicht mit von für auf den dem des
    sich auch wie wird werden sind war noch nach bei aus zum zur über oder aber
    """.split()
)


def tokenize(text: str) -> FrozenSet[str]:
    """Lower-cased content words of at least three letters."""
    words = _TOKEN_RE.findall((text or "").lower())
    return frozenset(w for w in words if w not in STOPWORDS)


def content_overlap(a: str, b: str) -> float:
    """Jaccard overlap of the content words of two texts, in [0, 1]."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def prepare_text_for_embedding(
    title: str,
    content: str,
    max_content_chars: int = 2000,
) -> str:
    """Title plus truncated content, the text that gets embedded."""
    parts = []
    if title and title.strip():
        parts.append(f"Title: {title.strip()}")
    if content and content.strip():
        parts.append(f"Content: {content.strip()[:max_content_chars]}")
    return "\n\n".join(parts)


def normalize_source_identifier(email: Optional[str], url: Optional[str]) -> str:
    """
    Reduce a sender or URL to a stable source key.
    "Newsletter <a@b.com>" -> "a@b.com", "https://www.x.com/p" -> "x.com".
    """
    if email:
        match = _EMAIL_IN_BRACKETS.search(email)
        if match:
            return match.group(1).strip().lower()
        if "@" in email:
            return email.strip().lower()

    if url:
        hostname = urlparse(url).hostname
        if hostname:
            return hostname[4:] if hostname.startswith("www.") else hostname

    return "unknown"


def extract_source_display_name(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    match = _DISPLAY_NAME.match(email)
    if match:
        name = match.group(1).strip()
        if name and "@" not in name:
            return name
    return None


def excerpt(text: Optional[str], length: int = 280) -> Optional[str]:
    if not text:
        return None
    text = " ".join(text.split())
    if len(text) <= length:
        return text
    return text[:length].rsplit(" ", 1)[0] + "…"
