"""URN normalization and filename extraction.

Identifiers look like ``urn:feat:sessions:chrome:download-commits``. Only the
``feat`` and ``test`` namespaces are accepted. Because ``:`` is not allowed in
filenames on every platform, downloads carry the identifier in one of several
encodings; the extractor tries them in a fixed priority order.
"""

import re
from typing import Callable, Optional
from urllib.parse import unquote

from .models import NO_URN, UrnExtract

NAMESPACES = ("feat", "test")

# Suffix grammar bounds: ".tar.gz", ".zip.crdownload", ".jsonl.gz"
MAX_EXTENSION_LENGTH = 16
MAX_EXTENSION_GROUPS = 3

_LEADING_PUNCT_RE = re.compile(r"^[<\[{(]+")
_TRAILING_PUNCT_RE = re.compile(r"[)\]}>,.]+$")
_URN_RE = re.compile(r"urn:(feat|test):(.+)")
_SEPARATOR_RE = re.compile(r"[:/]+")
_SEGMENT_RE = re.compile(r"[a-z0-9][a-z0-9_-]*")

# Each extension must start with a letter so version dots (v0.1.2) never
# parse as extensions.
SUFFIX_RE = re.compile(
    r"\s*(\(\d+\))?\s*"
    rf"(\.[A-Za-z][A-Za-z0-9_-]{{0,{MAX_EXTENSION_LENGTH - 1}}}){{1,{MAX_EXTENSION_GROUPS}}}"
    r"\s*",
    re.ASCII,
)

_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+")
_ENCODED_TOKEN_RE = re.compile(r"[A-Za-z0-9%_-]+")
_RAW_TOKEN_RE = re.compile(r"[A-Za-z0-9:/_-]+")


def _trim_punctuation(text: str) -> str:
    return _LEADING_PUNCT_RE.sub("", _TRAILING_PUNCT_RE.sub("", text))


def normalize_urn(candidate: Optional[str]) -> Optional[str]:
    """Validate and canonicalize an identifier candidate.

    Returns ``urn:<ns>:<seg>...`` or None. Either ``:`` or ``/`` separates
    segments; the output always uses ``:``. A single invalid segment rejects
    the whole candidate.
    """
    text = _trim_punctuation(str(candidate or "").strip())
    if not text:
        return None

    match = _URN_RE.fullmatch(text.lower())
    if not match:
        return None

    namespace, rest = match.groups()
    segments = [s for s in _SEPARATOR_RE.split(rest) if s]
    if not segments:
        return None
    for segment in segments:
        if not _SEGMENT_RE.fullmatch(segment):
            return None

    return f"urn:{namespace}:{':'.join(segments)}"


def urn_to_segments(urn: str) -> Optional[tuple[str, list[str]]]:
    """Split an identifier into its root (``urn:feat``) and segment list."""
    canonical = normalize_urn(urn)
    if not canonical:
        return None
    parts = canonical.split(":")
    return f"{parts[0]}:{parts[1]}", parts[2:]


def base_name(filename: str) -> str:
    """Strip any directory prefix (either slash style)."""
    parts = re.split(r"[\\/]", filename)
    return parts[-1] or filename


def _decode_percent(token: str) -> str:
    # Only decode when an encoded colon is present; "%" may be literal.
    if "%3A" not in token and "%3a" not in token:
        return token
    try:
        return unquote(token, errors="strict")
    except UnicodeDecodeError:
        return token


def _find_marker(lowered: str, markers: tuple[str, ...]) -> int:
    for marker in markers:
        idx = lowered.find(marker)
        if idx >= 0:
            return idx
    return -1


def _take_token(name: str, markers: tuple[str, ...], token_re: re.Pattern) -> Optional[str]:
    """Return the token starting at the first marker if the suffix after it is valid."""
    start = _find_marker(name.lower(), markers)
    if start < 0:
        return None
    match = token_re.match(name, start)
    if not match:
        return None
    if not SUFFIX_RE.fullmatch(name[match.end():]):
        return None
    return match.group(0)


def _match_percent_encoded(name: str) -> Optional[UrnExtract]:
    token = _take_token(name, ("urn%3a",), _ENCODED_TOKEN_RE)
    if token is None:
        return None
    urn = normalize_urn(_decode_percent(token))
    return UrnExtract(urn, "filename:urn%3A") if urn else None


def _match_double_underscore(name: str) -> Optional[UrnExtract]:
    token = _take_token(name, ("urn__feat__", "urn__test__"), _TOKEN_RE)
    if token is None:
        return None
    urn = normalize_urn(token.replace("__", ":"))
    return UrnExtract(urn, "filename:urn__") if urn else None


def _match_single_underscore(name: str) -> Optional[UrnExtract]:
    token = _take_token(name, ("urn_feat_", "urn_test_"), _TOKEN_RE)
    if token is None:
        return None
    decoded = re.sub(r"^urn_(feat|test)_", r"urn:\1:", token).replace("_", ":")
    urn = normalize_urn(decoded)
    return UrnExtract(urn, "filename:urn_") if urn else None


def _match_raw(name: str) -> Optional[UrnExtract]:
    token = _take_token(name, ("urn:feat:", "urn:test:"), _RAW_TOKEN_RE)
    if token is None:
        return None
    urn = normalize_urn(token)
    return UrnExtract(urn, "filename:urn:") if urn else None


# Priority order; the first matcher that returns a result wins.
MATCHERS: tuple[Callable[[str], Optional[UrnExtract]], ...] = (
    _match_percent_encoded,
    _match_double_underscore,
    _match_single_underscore,
    _match_raw,
)


def extract_urn_from_filename(filename: Optional[str]) -> UrnExtract:
    """Recover a canonical identifier from a downloaded filename.

    Returns ``UrnExtract(None, None)`` when no rule matches; most files carry
    no identifier, so that is the normal outcome.
    """
    if not filename:
        return NO_URN
    name = base_name(str(filename))
    for matcher in MATCHERS:
        result = matcher(name)
        if result is not None:
            return result
    return NO_URN
