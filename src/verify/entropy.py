"""Shannon entropy scoring for secret candidates.

Higher entropy means more randomness, which real secrets have and
placeholder values do not. Degenerate shapes (a single repeated character,
an ascending run) are rejected before entropy is consulted, because
repetition games the entropy score.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass

# Structured secrets get low minimums, random tokens high ones.
ENTROPY_THRESHOLDS: dict[str, float] = {
    "aws_access_key": 3.5,
    "aws_secret_key": 4.2,
    "google_api_key": 3.5,
    "github_token": 3.8,
    "github_oauth": 3.8,
    "github_app": 3.8,
    "gitlab_token": 3.5,
    "stripe_live_key": 3.5,
    "stripe_test_key": 3.0,
    "stripe_restricted_key": 3.5,
    "slack_token": 3.5,
    "sendgrid_key": 4.0,
    "twilio_key": 3.5,
    "openai_key": 4.0,
    "anthropic_key": 4.0,
    "jwt_token": 4.0,
    "bearer_token": 3.5,
    "private_key": 2.0,
    "ssh_key": 2.0,
    "database_url": 2.5,
    "api_key": 4.0,
    "password": 3.0,
    "generic_secret": 4.0,
}

DEFAULT_THRESHOLD = 3.5

# Practical ceiling for real-world secrets; confidence saturates here.
_PRACTICAL_MAX_ENTROPY = 5.0

_REPEATING = re.compile(r"^(.)\1+$")
_SEQUENTIAL = re.compile(r"^(?:01234|12345|23456|34567|45678|56789|abcde|bcdef|ABCDE)", re.IGNORECASE)
_LONG_REPEAT = re.compile(r"(.)\1{3,}")


def calculate_entropy(value: str) -> float:
    """Shannon entropy in bits per character.

    Bounded by log2 of the number of distinct characters, so at most 8 for
    byte-sized alphabets. Empty and single-symbol strings score 0.
    """
    if not value:
        return 0.0
    length = len(value)
    entropy = 0.0
    for count in Counter(value).values():
        p = count / length
        entropy -= p * math.log2(p)
    # -0.0 shows up for single-symbol strings
    return max(0.0, entropy)


def has_minimum_entropy(value: str, min_entropy: float = DEFAULT_THRESHOLD) -> bool:
    return calculate_entropy(value) >= min_entropy


def get_entropy_threshold(secret_type: str) -> float:
    return ENTROPY_THRESHOLDS.get(secret_type, DEFAULT_THRESHOLD)


def calculate_confidence(entropy: float, min_entropy: float) -> float:
    """Linear confidence from the type minimum up to the practical ceiling.

    Returns 0 below the minimum, otherwise starts at 0.5 and is clamped to 1.
    """
    if entropy < min_entropy:
        return 0.0
    span = _PRACTICAL_MAX_ENTROPY - min_entropy
    if span <= 0:
        return 1.0
    confidence = min(1.0, (entropy - min_entropy) / span + 0.5)
    return round(confidence, 2)


def to_confidence_level(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.5:
        return "medium"
    return "low"


@dataclass(frozen=True)
class EntropyCharacteristics:
    has_lowercase: bool
    has_uppercase: bool
    has_digits: bool
    has_special: bool
    is_repeating: bool
    is_sequential: bool
    has_repetition: bool


@dataclass(frozen=True)
class EntropyAnalysis:
    entropy: float
    length: int
    char_classes: int
    characteristics: EntropyCharacteristics
    verdict: str  # likely_secret | possible_secret | unlikely_secret | definitely_not_secret

    @property
    def is_degenerate(self) -> bool:
        return self.characteristics.is_repeating or self.characteristics.is_sequential


def _verdict(entropy: float, *, degenerate: bool) -> str:
    if degenerate:
        return "definitely_not_secret"
    if entropy >= 4.5:
        return "likely_secret"
    if entropy >= 3.5:
        return "possible_secret"
    if entropy >= 2.5:
        return "unlikely_secret"
    return "definitely_not_secret"


def analyze_entropy(value: str) -> EntropyAnalysis:
    """Entropy plus the shape checks that override it."""
    is_repeating = bool(_REPEATING.match(value))
    is_sequential = bool(_SEQUENTIAL.match(value))
    characteristics = EntropyCharacteristics(
        has_lowercase=bool(re.search(r"[a-z]", value)),
        has_uppercase=bool(re.search(r"[A-Z]", value)),
        has_digits=bool(re.search(r"[0-9]", value)),
        has_special=bool(re.search(r"[^a-zA-Z0-9]", value)),
        is_repeating=is_repeating,
        is_sequential=is_sequential,
        has_repetition=bool(_LONG_REPEAT.search(value)),
    )
    char_classes = sum(
        (
            characteristics.has_lowercase,
            characteristics.has_uppercase,
            characteristics.has_digits,
            characteristics.has_special,
        )
    )
    entropy = calculate_entropy(value)
    return EntropyAnalysis(
        entropy=entropy,
        length=len(value),
        char_classes=char_classes,
        characteristics=characteristics,
        verdict=_verdict(entropy, degenerate=is_repeating or is_sequential),
    )


@dataclass(frozen=True)
class SecretScore:
    secret_type: str
    threshold: float
    analysis: EntropyAnalysis
    confidence: float
    level: str


def score_secret(value: str, secret_type: str = "generic_secret") -> SecretScore:
    """Score a candidate secret against its type threshold.

    Degenerate values get confidence 0 whatever their entropy.
    """
    analysis = analyze_entropy(value)
    threshold = get_entropy_threshold(secret_type)
    confidence = 0.0 if analysis.is_degenerate else calculate_confidence(analysis.entropy, threshold)
    return SecretScore(
        secret_type=secret_type,
        threshold=threshold,
        analysis=analysis,
        confidence=confidence,
        level=to_confidence_level(confidence),
    )
