from typing import List, Optional

from pydantic import BaseModel

SN_PREFIX = "952985"
SN_LEN = 20

# Index 18 (second to last). Letters from the second half of the alphabet rarely show up there.
RARE_2ND_LAST_LETTERS = frozenset("klmnopqrstuvwxyzKLMNOPQRSTUVWXYZ")

ERROR = "error"
ADVISORY = "advisory"

_ASCII_LETTERS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_ASCII_DIGITS = frozenset("0123456789")
_ASCII_ALNUM = _ASCII_LETTERS | _ASCII_DIGITS


class ValidationMessage(BaseModel):
    text: str
    severity: str = ERROR


class ValidationResult(BaseModel):
    messages: List[ValidationMessage] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> List[str]:
        return [m.text for m in self.messages if m.severity == ERROR]

    @property
    def advisories(self) -> List[str]:
        return [m.text for m in self.messages if m.severity == ADVISORY]

    @property
    def texts(self) -> List[str]:
        return [m.text for m in self.messages]


def _check_span(s: str, start: int, end: int, allowed: frozenset) -> bool:
    """True if every character of s[start:end] that exists is in `allowed`."""
    for i in range(start, min(end, len(s))):
        if s[i] not in allowed:
            return False
    return True


def validate_sn(sn: Optional[str]) -> ValidationResult:
    """
    Checks an SN against the label format:
    952985 + letter + digit + letter + 9 digits + 2 alphanumerics (20 chars).

    Every check runs independently and only looks at positions the string
    actually has, so short or garbled input yields messages rather than errors.
    The rare-letter hint is advisory and never affects `is_valid`.
    """
    if not sn:
        return ValidationResult(messages=[ValidationMessage(text="SN为空")])

    s = sn.strip()
    messages: List[ValidationMessage] = []

    def error(text: str):
        messages.append(ValidationMessage(text=text, severity=ERROR))

    # 1. Length
    if len(s) != SN_LEN:
        error(f"长度错误(当前{len(s)}位, 应{SN_LEN}位)")

    # 2. Prefix
    if not s.startswith(SN_PREFIX):
        error(f"前缀错误(当前{s[:len(SN_PREFIX)]}, 应{SN_PREFIX})")

    # 3. Positions (1-based in the messages)
    if len(s) > 6 and s[6] not in _ASCII_LETTERS:
        error("第7位应为字母")

    if len(s) > 7 and s[7] not in _ASCII_DIGITS:
        error("第8位应为数字")

    if len(s) > 8 and s[8] not in _ASCII_LETTERS:
        error("第9位应为字母")

    if not _check_span(s, 9, 18, _ASCII_DIGITS):
        error("第10-18位应为数字")

    if not _check_span(s, 18, 20, _ASCII_ALNUM):
        error("最后2位应为数字或字母")

    # 4. Advisory
    if len(s) > 18 and s[18] in RARE_2ND_LAST_LETTERS:
        messages.append(ValidationMessage(text="提示:倒数第2位为少见字母", severity=ADVISORY))

    return ValidationResult(messages=messages)
