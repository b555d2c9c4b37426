from __future__ import annotations

import re
from dataclasses import dataclass

DEFAULT_COUNTRY_CODE = "+86"

_SEPARATORS = re.compile(r"[\s\-]+")
_PLUS_SPLIT = re.compile(r"^\+(\d{1,4})(.*)$")
_DOMESTIC_MOBILE_CANDIDATE = re.compile(r"^1\d{10}$")
_DIGITS = re.compile(r"^\d+$")

# ITU-T E.164 calling codes. The set is prefix-free, so at most one entry
# matches the start of a number.
_CALLING_CODES = frozenset(
    ["1", "7"]
    + """
    20 27 30 31 32 33 34 36 39 40 41 43 44 45 46 47 48 49 51 52 53 54 55 56 57
    58 60 61 62 63 64 65 66 81 82 84 86 90 91 92 93 94 95 98
    211 212 213 216 218 220 221 222 223 224 225 226 227 228 229 230 231 232 233
    234 235 236 237 238 239 240 241 242 243 244 245 246 248 249 250 251 252 253
    254 255 256 257 258 260 261 262 263 264 265 266 267 268 269 290 291 297 298
    299 350 351 352 353 354 355 356 357 358 359 370 371 372 373 374 375 376 377
    378 380 381 382 383 385 386 387 389 420 421 423 500 501 502 503 504 505 506
    507 508 509 590 591 592 593 594 595 596 597 598 599 670 672 673 674 675 676
    677 678 679 680 681 682 683 685 686 687 688 689 690 691 692 850 852 853 855
    856 880 886 960 961 962 963 964 965 966 967 968 970 971 972 973 974 975 976
    977 992 993 994 995 996 998
    """.split()
)

# National-number rules for countries that have a stricter format than the
# generic 6-15 digit check.
_COUNTRY_RULES: dict[str, re.Pattern[str]] = {
    "+86": re.compile(r"^1[3-9]\d{9}$"),
    "+1": re.compile(r"^[2-9]\d{9}$"),
    "+852": re.compile(r"^\d{8}$"),
    "+853": re.compile(r"^\d{8}$"),
    "+886": re.compile(r"^9\d{8}$"),
}


@dataclass(frozen=True, slots=True)
class PhoneNumber:
    country_code: str
    national_number: str
    e164_format: str

    @classmethod
    def build(cls, country_code: str, national_number: str) -> "PhoneNumber":
        return cls(
            country_code=country_code,
            national_number=national_number,
            e164_format=f"{country_code}{national_number}",
        )


def _known_code_prefix(digits: str, min_remaining: int = 0) -> str | None:
    for length in (1, 2, 3):
        prefix = digits[:length]
        if prefix in _CALLING_CODES and len(digits) - length >= min_remaining:
            return prefix
    return None


def parse_phone_number(raw: str | None) -> PhoneNumber:
    """Parse any phone string into a best-effort canonical international form.

    Never raises; input without a recognisable international prefix is
    assumed to be a domestic number.
    """

    cleaned = _SEPARATORS.sub("", str(raw or ""))

    if cleaned.startswith("+"):
        body = cleaned[1:]
        leading_digits = re.match(r"\d*", body).group(0)
        code = _known_code_prefix(leading_digits)
        if code:
            return PhoneNumber.build(f"+{code}", body[len(code):])
        match = _PLUS_SPLIT.match(cleaned)
        if match:
            return PhoneNumber.build(f"+{match.group(1)}", match.group(2))

    elif cleaned.startswith("00") and _DIGITS.match(cleaned):
        body = cleaned[2:]
        code = _known_code_prefix(body, min_remaining=6)
        if code:
            return PhoneNumber.build(f"+{code}", body[len(code):])
        for length in (2, 3, 4):
            if len(body) - length >= 6:
                return PhoneNumber.build(f"+{body[:length]}", body[length:])

    elif _DOMESTIC_MOBILE_CANDIDATE.match(cleaned):
        return PhoneNumber.build(DEFAULT_COUNTRY_CODE, cleaned)

    return PhoneNumber.build(DEFAULT_COUNTRY_CODE, cleaned)


def is_valid_phone_number(raw: str | PhoneNumber | None) -> bool:
    phone = raw if isinstance(raw, PhoneNumber) else parse_phone_number(raw)
    national = phone.national_number
    rule = _COUNTRY_RULES.get(phone.country_code)
    if rule is not None:
        return bool(rule.match(national))
    return bool(_DIGITS.match(national)) and 6 <= len(national) <= 15


def mask_phone_number(raw: str | PhoneNumber | None) -> str:
    """Hide the middle digits of a number for log output."""

    phone = raw if isinstance(raw, PhoneNumber) else parse_phone_number(raw)
    national = phone.national_number
    if len(national) <= 4:
        return f"{phone.country_code}{'*' * len(national)}"
    visible_head = min(3, len(national) - 4)
    hidden = len(national) - visible_head - 4
    return f"{phone.country_code}{national[:visible_head]}{'*' * hidden}{national[-4:]}"
