"""Password strength rules.

Accounts hold patient data, so passwords need at least 12 characters and
all four character classes.
"""

import re

from pydantic import BaseModel, Field

MIN_LENGTH = 12
EXCELLENT_LENGTH = 16

_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

COMMON_PATTERNS = [
    re.compile(r"123+", re.IGNORECASE),
    re.compile(r"abc+", re.IGNORECASE),
    re.compile(r"qwerty", re.IGNORECASE),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"admin", re.IGNORECASE),
    re.compile(r"letmein", re.IGNORECASE),
    re.compile(r"welcome", re.IGNORECASE),
    re.compile(r"monkey", re.IGNORECASE),
    re.compile(r"dragon", re.IGNORECASE),
    re.compile(r"master", re.IGNORECASE),
    re.compile(r"\b(\w+)\1+\b", re.IGNORECASE),  # repeated words
]

SEQUENCES = [
    "01234567890",
    "abcdefghijklmnopqrstuvwxyz",
    "qwertyuiop",
    "asdfghjkl",
    "zxcvbnm",
]

STRENGTH_LABELS = {0: "Weak", 1: "Weak", 2: "Fair", 3: "Good", 4: "Strong"}


class PasswordStrength(BaseModel):
    valid: bool
    score: int = Field(ge=0, le=4)
    feedback: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return password_strength_label(self.score)


def _contains_sequence(password: str, sequence: str) -> bool:
    lowered = password.lower()
    for i in range(len(sequence) - 3):
        run = sequence[i:i + 4]
        if run in lowered or run[::-1] in lowered:
            return True
    return False


def validate_password_strength(password: str) -> PasswordStrength:
    """Score a password from 0 (weak) to 4 (strong) and list problems.

    A password is valid only when ``errors`` is empty.
    """
    errors: list[str] = []
    feedback: list[str] = []
    score = 0

    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    else:
        score += 1
        if len(password) >= EXCELLENT_LENGTH:
            score += 1
            feedback.append("Excellent length")

    has_upper = bool(re.search(r"[A-Z]", password))
    has_lower = bool(re.search(r"[a-z]", password))
    has_number = bool(re.search(r"[0-9]", password))
    has_special = bool(_SPECIAL_RE.search(password))

    if not has_upper:
        errors.append("Include at least one uppercase letter")
    if not has_lower:
        errors.append("Include at least one lowercase letter")
    if not has_number:
        errors.append("Include at least one number")
    if not has_special:
        errors.append("Include at least one special character (!@#$%^&* etc.)")

    complexity = sum([has_upper, has_lower, has_number, has_special])
    if complexity == 4:
        score += 1
        feedback.append("Good character variety")

    for pattern in COMMON_PATTERNS:
        if pattern.search(password):
            errors.append("Password contains common patterns or words")
            score = max(0, score - 1)
            break

    for sequence in SEQUENCES:
        if _contains_sequence(password, sequence):
            feedback.append("Avoid sequential characters")

    if not errors and complexity == 4 and len(password) >= EXCELLENT_LENGTH:
        score = 4

    return PasswordStrength(
        valid=not errors,
        score=min(4, max(0, score)),
        feedback=feedback,
        errors=errors,
    )


def password_strength_label(score: int) -> str:
    return STRENGTH_LABELS.get(score, "Unknown")
