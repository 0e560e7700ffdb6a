"""Sensitive-content scanner for outbound chat messages.

Runs an ordered set of pattern matchers over a text blob and reports every
detection together with a category-specific masked form.  Payment card
matches are gated by a Luhn checksum to suppress false positives.  The
scanner never raises; callers decide whether a detection blocks the request
or is only masked (logging uses ``mask_for_log``).

Raw matched values stay inside ``Detection`` objects.  Anything that crosses
the scanner boundary (error details, log fields) must use ``public_view()``.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Masking transforms
# ---------------------------------------------------------------------------


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    tld = domain.rsplit(".", 1)[-1]
    return f"{local[:1]}***@{domain[:1]}***.{tld}"


def _mask_phone(value: str) -> str:
    digit_count = sum(1 for char in value if char.isdigit())
    to_mask = max(digit_count - 4, 0)
    masked: list[str] = []
    for char in value:
        if char.isdigit() and to_mask > 0:
            masked.append("*")
            to_mask -= 1
        else:
            masked.append(char)
    return "".join(masked)


def _digits(value: str) -> str:
    return "".join(char for char in value if char.isdigit())


def luhn_valid(digits: str) -> bool:
    """Return True if ``digits`` passes the Luhn checksum."""
    if not digits or not digits.isdigit():
        return False
    total = 0
    for index, char in enumerate(reversed(digits)):
        number = int(char)
        if index % 2 == 1:
            number *= 2
            if number > 9:
                number -= 9
        total += number
    return total % 10 == 0


def _is_card_number(value: str) -> bool:
    digits = _digits(value)
    return 13 <= len(digits) <= 19 and luhn_valid(digits)


def _mask_card(value: str) -> str:
    return f"****-****-****-{_digits(value)[-4:]}"


def _mask_api_key(value: str) -> str:
    return value[:6] + "*" * min(len(value) - 6, 20)


_PASSWORD_SEPARATOR = re.compile(r"[=:]")


def _mask_password(value: str) -> str:
    separator = _PASSWORD_SEPARATOR.search(value)
    if separator is None:
        return "[REDACTED_PASSWORD]"
    return f"{value[: separator.end()]} [REDACTED]"


def _mask_aadhaar(value: str) -> str:
    return f"****-****-{_digits(value)[-4:]}"


def _mask_pan(value: str) -> str:
    return f"{value[:2]}****{value[-2:]}"


# ---------------------------------------------------------------------------
# Pattern registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SensitivePattern:
    type: str
    label: str
    regex: re.Pattern[str]
    mask: Callable[[str], str]
    validate: Callable[[str], bool] | None = None


# Order matters: when two matchers report the exact same span only the first
# is kept.
_CORE_PATTERNS: tuple[SensitivePattern, ...] = (
    SensitivePattern(
        type="email",
        label="Email Address",
        regex=re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}"),
        mask=_mask_email,
    ),
    SensitivePattern(
        type="phone",
        label="Phone Number",
        regex=re.compile(r"(?:\+\d{1,3}[-.]\s?)\(?\d{2,4}\)?[-.]?\d{3,4}[-.]?\d{3,4}"),
        mask=_mask_phone,
    ),
    SensitivePattern(
        type="credit_card",
        label="Credit Card Number",
        regex=re.compile(r"\b(?:\d[ \-]*?){13,19}\b"),
        mask=_mask_card,
        validate=_is_card_number,
    ),
    SensitivePattern(
        type="ssn",
        label="Social Security Number",
        regex=re.compile(r"\b(?!000|666|9\d{2})\d{3}[-\s](?!00)\d{2}[-\s](?!0000)\d{4}\b"),
        mask=lambda _: "***-**-****",
    ),
    SensitivePattern(
        type="api_key",
        label="API Key / Token",
        regex=re.compile(
            r"\b(?:sk-[a-zA-Z0-9]{20,}|ghp_[a-zA-Z0-9]{36,}|gho_[a-zA-Z0-9]{36,}"
            r"|glpat-[a-zA-Z0-9\-]{20,}|xox[bpras]-[a-zA-Z0-9\-]{10,}"
            r"|AIza[a-zA-Z0-9_\-]{35}|ya29\.[a-zA-Z0-9_\-.]{50,}|AKIA[A-Z0-9]{16})\b"
        ),
        mask=_mask_api_key,
    ),
    SensitivePattern(
        type="password",
        label="Password",
        regex=re.compile(
            r"(?:password|passwd|pwd|pass)\s*[=:]\s*[\"']?[^\s\"',;]{4,}", re.IGNORECASE
        ),
        mask=_mask_password,
    ),
    SensitivePattern(
        type="address",
        label="Street Address",
        regex=re.compile(
            r"\b\d{1,5}\s+(?:[A-Z][a-z]+\s){1,3}"
            r"(?:St|Street|Ave|Avenue|Blvd|Boulevard|Dr|Drive|Ln|Lane|Rd|Road|Ct|Court"
            r"|Way|Pl|Place)\.?\b",
            re.IGNORECASE,
        ),
        mask=lambda _: "[REDACTED_ADDRESS]",
    ),
    SensitivePattern(
        type="aadhaar",
        label="Aadhaar Number",
        regex=re.compile(r"\b[2-9]\d{3}[\s-]?\d{4}[\s-]?\d{4}\b"),
        mask=_mask_aadhaar,
    ),
    SensitivePattern(
        type="pan",
        label="PAN Number",
        regex=re.compile(r"\b[A-Z]{5}\d{4}[A-Z]\b"),
        mask=_mask_pan,
    ),
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Detection:
    type: str
    raw_value: str = field(repr=False)
    masked_value: str
    start: int
    end: int

    def public_view(self) -> dict[str, str]:
        return {"type": self.type, "hint": self.masked_value}


@dataclass
class ScanResult:
    has_detections: bool
    detections: list[Detection]
    masked_text: str

    @property
    def types(self) -> list[str]:
        return [detection.type for detection in self.detections]

    def public_detections(self) -> list[dict[str, str]]:
        """Client-facing views, without detections nested inside an earlier one."""
        shown: list[Detection] = []
        for detection in self.detections:
            if any(k.start <= detection.start and detection.end <= k.end for k in shown):
                continue
            shown.append(detection)
        return [detection.public_view() for detection in shown]


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


class SensitiveContentScanner:
    """Ordered, regex-based scanner for personal data and credentials.

    Parameters
    ----------
    extra_patterns : tuple of ``SensitivePattern``, optional
        Additional matchers appended after the core set.
    """

    def __init__(self, extra_patterns: tuple[SensitivePattern, ...] = ()) -> None:
        self._patterns = _CORE_PATTERNS + extra_patterns

    @property
    def pattern_count(self) -> int:
        return len(self._patterns)

    def scan(self, text: str) -> ScanResult:
        detections: list[Detection] = []
        seen_spans: set[tuple[int, int]] = set()

        for pattern in self._patterns:
            for match in pattern.regex.finditer(text):
                value = match.group(0)
                if not value:
                    continue
                if pattern.validate is not None and not pattern.validate(value):
                    continue
                span = (match.start(), match.end())
                if span in seen_spans:
                    continue
                seen_spans.add(span)
                detections.append(
                    Detection(
                        type=pattern.type,
                        raw_value=value,
                        masked_value=pattern.mask(value),
                        start=span[0],
                        end=span[1],
                    )
                )

        return ScanResult(
            has_detections=bool(detections),
            detections=detections,
            masked_text=self._apply_masks(text, detections),
        )

    @staticmethod
    def _apply_masks(text: str, detections: list[Detection]) -> str:
        # Back to front so earlier offsets stay valid; a detection overlapping
        # one already applied is left out of the substitution.
        ordered = sorted(detections, key=lambda d: (d.start, d.end), reverse=True)
        masked = text
        boundary = len(text)
        for detection in ordered:
            if detection.end > boundary:
                continue
            masked = masked[: detection.start] + detection.masked_value + masked[detection.end :]
            boundary = detection.start
        return masked


_default_scanner = SensitiveContentScanner()


def scan(text: str) -> ScanResult:
    return _default_scanner.scan(text)


def mask_for_log(text: str) -> str:
    """Return ``text`` with every detection replaced by its masked form."""
    return _default_scanner.scan(text).masked_text
