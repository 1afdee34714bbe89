"""
Language resolution for caller utterances.

Every utterance gets exactly one locale from a small fixed set. Precedence,
highest first:

1. Indic script codepoints in the transcript (overrides the recognizer tag)
2. Romanized Gujarati/Hindi marker words when the recognizer reported the
   primary language
3. The recognizer's own tag, when it maps to a supported locale
4. Statistical identification (langdetect) for unresolved tags; very short
   texts default to the primary language

The confirmed language then follows the lock strictness policy.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Optional

from langdetect import DetectorFactory, detect
from langdetect.lang_detect_exception import LangDetectException

# langdetect is randomized unless seeded.
DetectorFactory.seed = 0

DEFAULT_LANGUAGE = "en-IN"
UNKNOWN_LANGUAGE = "unknown"

SUPPORTED_LANGUAGES: tuple[str, ...] = (
    "en-IN",
    "hi-IN",
    "gu-IN",
    "bn-IN",
    "kn-IN",
    "ml-IN",
    "mr-IN",
    "od-IN",
    "pa-IN",
    "ta-IN",
    "te-IN",
)

STRICTNESS_LOOSE = 0
STRICTNESS_MODERATE = 1
STRICTNESS_STRICT = 2

MIN_STATISTICAL_CHARS = 6

_PREFIX_TO_LOCALE: tuple[tuple[str, str], ...] = (
    ("gu", "gu-IN"),
    ("hi", "hi-IN"),
    ("en", "en-IN"),
    ("bn", "bn-IN"),
    ("kn", "kn-IN"),
    ("ml", "ml-IN"),
    ("mr", "mr-IN"),
    ("or", "od-IN"),
    ("od", "od-IN"),
    ("pa", "pa-IN"),
    ("ta", "ta-IN"),
    ("te", "te-IN"),
)

# Listed in tie-break order.
_SCRIPT_BLOCKS: tuple[tuple[str, int, int], ...] = (
    ("hi-IN", 0x0900, 0x097F),  # Devanagari
    ("gu-IN", 0x0A80, 0x0AFF),  # Gujarati
    ("pa-IN", 0x0A00, 0x0A7F),  # Gurmukhi
    ("bn-IN", 0x0980, 0x09FF),  # Bengali
    ("od-IN", 0x0B00, 0x0B7F),  # Oriya
    ("ta-IN", 0x0B80, 0x0BFF),  # Tamil
    ("te-IN", 0x0C00, 0x0C7F),  # Telugu
    ("kn-IN", 0x0C80, 0x0CFF),  # Kannada
    ("ml-IN", 0x0D00, 0x0D7F),  # Malayalam
)

_ROMAN_GUJARATI_RE = re.compile(
    r"\b(kem|cho|maja|majama|tame|tamne|shu|su|mane|hu|maru|bhai|barabar|krupaya|dhanyavaad)\b",
    re.IGNORECASE,
)
_ROMAN_HINDI_RE = re.compile(
    r"\b(aap|aapka|kaise|naam|namaste|shukriya|haan|nahi|kya|kyu|kyun|theek|thik|bahut|kripya|dhanyavad)\b",
    re.IGNORECASE,
)


def normalize_language_code(tag: Optional[str]) -> str:
    """
    Map a recognizer/user language tag onto the supported locale set.

    "hi", "hi-in", "HI_IN" -> "hi-IN"; "or"/"od" -> "od-IN".
    Empty or unsupported tags return "unknown".
    """
    if not tag:
        return UNKNOWN_LANGUAGE
    norm = str(tag).strip().lower()
    for prefix, locale in _PREFIX_TO_LOCALE:
        if norm.startswith(prefix):
            return locale
    return UNKNOWN_LANGUAGE


def detect_script_language(text: str) -> Optional[str]:
    """Return the locale whose script has the most codepoints in `text`, if any."""
    if not text:
        return None

    counts = {locale: 0 for locale, _, _ in _SCRIPT_BLOCKS}
    for ch in text:
        cp = ord(ch)
        if cp < 0x0900 or cp > 0x0D7F:
            continue
        for locale, start, end in _SCRIPT_BLOCKS:
            if start <= cp <= end:
                counts[locale] += 1
                break

    best: Optional[str] = None
    best_count = 0
    for locale, _, _ in _SCRIPT_BLOCKS:
        if counts[locale] > best_count:
            best = locale
            best_count = counts[locale]
    return best


def detect_lexical_language(text: str) -> Optional[str]:
    """Detect romanized Gujarati or Hindi from marker words. Hindi wins when both match."""
    if not text:
        return None
    lang = None
    if _ROMAN_GUJARATI_RE.search(text):
        lang = "gu-IN"
    if _ROMAN_HINDI_RE.search(text):
        lang = "hi-IN"
    return lang


def detect_language_statistical(text: str, primary: str = DEFAULT_LANGUAGE) -> str:
    """
    Statistical language identification for text with no usable recognizer tag.

    Texts shorter than MIN_STATISTICAL_CHARS are too ambiguous and return
    `primary`, as does anything langdetect cannot map onto a supported locale.
    """
    stripped = (text or "").strip()
    if len(stripped) < MIN_STATISTICAL_CHARS:
        return primary

    try:
        detected = detect(stripped)
    except LangDetectException:
        return primary

    locale = normalize_language_code(detected)
    if locale == UNKNOWN_LANGUAGE:
        return primary
    return locale


@dataclass(frozen=True)
class LanguageDecision:
    """Outcome of resolving one utterance's language."""

    resolved: str
    confirmed: str
    raw: str
    reason: str


def resolve_language(
    transcript: str,
    raw_tag: Optional[str],
    *,
    previous: str = DEFAULT_LANGUAGE,
    strictness: int = STRICTNESS_MODERATE,
    primary: str = DEFAULT_LANGUAGE,
) -> LanguageDecision:
    """
    Resolve the reply language for one utterance.

    Pure and deterministic: the same (transcript, raw_tag, previous,
    strictness, primary) always yields the same decision.
    """
    raw = raw_tag or UNKNOWN_LANGUAGE
    normalized_raw = normalize_language_code(raw_tag)
    text = transcript or ""

    script_lang = detect_script_language(text)
    if script_lang:
        resolved, reason = script_lang, "script"
    elif normalized_raw == primary and detect_lexical_language(text):
        resolved, reason = detect_lexical_language(text), "lexical"
    elif normalized_raw != UNKNOWN_LANGUAGE:
        resolved, reason = normalized_raw, "recognizer"
    else:
        resolved, reason = detect_language_statistical(text, primary), "statistical"

    if previous not in SUPPORTED_LANGUAGES:
        previous = primary

    if strictness >= STRICTNESS_STRICT:
        confirmed = resolved if resolved == normalized_raw else previous
    else:
        confirmed = resolved

    return LanguageDecision(resolved=resolved, confirmed=confirmed, raw=raw, reason=reason)


@dataclass
class LangState:
    """
    Per-call confirmed language.

    `confirmed` starts at the primary language and never becomes "unknown".
    """

    primary: str = DEFAULT_LANGUAGE
    strictness: int = STRICTNESS_MODERATE
    confirmed: str = ""
    switches: int = 0

    def __post_init__(self) -> None:
        if self.primary not in SUPPORTED_LANGUAGES:
            self.primary = DEFAULT_LANGUAGE
        if self.confirmed not in SUPPORTED_LANGUAGES:
            self.confirmed = self.primary

    def resolve(self, transcript: str, raw_tag: Optional[str]) -> LanguageDecision:
        """Resolve a turn's language and update `confirmed` from the decision."""
        decision = resolve_language(
            transcript,
            raw_tag,
            previous=self.confirmed,
            strictness=self.strictness,
            primary=self.primary,
        )
        if decision.confirmed != self.confirmed:
            self.switches += 1
        self.confirmed = decision.confirmed
        return decision
