from __future__ import annotations

import math
import re
import secrets
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pinguard.config import PinStrength, Settings
from pinguard.logging import get_logger, mask_pin
from pinguard.service.errors import (
    GenerationExhaustedError,
    InvalidCredentialError,
    InvalidCredentialFormatError,
)

logger = get_logger(__name__)

PIN_ALGO = "argon2id"

_PIN_FORMAT = re.compile(r"[0-9]{4}")

# Sequential, repeated, mirrored-pair, date-like, year-like and keypad patterns
WEAK_PINS = frozenset(
    [
        "0123", "1234", "2345", "3456", "4567", "5678", "6789", "7890",
        "9876", "8765", "7654", "6543", "5432", "4321", "3210",
        "0000", "1111", "2222", "3333", "4444", "5555", "6666", "7777", "8888", "9999",
        "1212", "2121", "1313", "3131", "1414", "4141", "1515", "5151",
        "2323", "3232", "2424", "4242", "2525", "5252", "2626", "6262",
        "3434", "4343", "3535", "5353", "3636", "6363", "4545", "5454",
        "4646", "6464", "5656", "6565", "5757", "7575", "6767", "7676",
        "6868", "8686", "7878", "8787", "7979", "9797", "8989", "9898",
        "0101", "0102", "0201", "0202", "1225", "1224", "0401", "0501",
        "0701", "0801", "0901", "1001", "1101", "1201",
        "1980", "1990", "2000", "2010", "2020", "1975", "1985", "1995",
        "2002", "3003", "4004", "5005",
        "1357", "2468", "1590", "7410", "8520", "9630",
    ]
)

_STRENGTH_HINTS = {
    PinStrength.WEAK: "Use different digits and avoid obvious patterns",
    PinStrength.MEDIUM: "Use a mix of different digits with no clear pattern",
    PinStrength.STRONG: "Use random digits with high entropy and no patterns",
}


@dataclass
class PinValidation:
    is_valid: bool
    strength: PinStrength = PinStrength.WEAK
    score: float = 0.0
    errors: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)


def _is_arithmetic(digits: List[int]) -> bool:
    step = digits[1] - digits[0]
    return all(b - a == step for a, b in zip(digits[1:], digits[2:]))


def _normalized_entropy(pin: str) -> float:
    total = len(pin)
    entropy = 0.0
    for count in Counter(pin).values():
        p = count / total
        entropy -= p * math.log2(p)
    return entropy / math.log2(10)


def strength_score(pin: str) -> float:
    """Score a well-formed PIN on a 0..100 scale."""

    digits = [int(c) for c in pin]
    score = len(set(digits)) / len(digits) * 30
    pairs = list(zip(digits, digits[1:]))
    if all(a != b for a, b in pairs):
        score += 20
    if all(abs(a - b) != 1 for a, b in pairs):
        score += 25
    if not _is_arithmetic(digits):
        score += 15
    if _normalized_entropy(pin) > 0.6:
        score += 10
    return score


def classify(score: float) -> PinStrength:
    if score >= 80:
        return PinStrength.STRONG
    if score >= 50:
        return PinStrength.MEDIUM
    return PinStrength.WEAK


class PinPolicy:
    """Validates, scores, hashes and verifies 4-digit PINs.

    Hashing uses argon2id with the configured cost factors. Verification of a
    malformed PIN or unusable digest still runs one argon2 comparison against a
    fixed dummy digest so failure latency does not reveal the failure reason.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.min_strength = settings.pin_min_strength
        self._hasher = PasswordHasher(
            time_cost=settings.pin_hash_time_cost,
            memory_cost=settings.pin_hash_memory_cost,
            parallelism=settings.pin_hash_parallelism,
            type=Type.ID,
        )
        # Same parameters as real digests so the dummy path costs the same
        self._dummy_hash = self._hasher.hash("pinguard-dummy-credential")

    # validation ---------------------------------------------------------

    @staticmethod
    def is_well_formed(pin: object) -> bool:
        return isinstance(pin, str) and bool(_PIN_FORMAT.fullmatch(pin))

    def validate(self, pin: str) -> PinValidation:
        if not self.is_well_formed(pin):
            return PinValidation(
                is_valid=False,
                errors=["PIN must be exactly 4 digits"],
                suggestions=["Enter four numeric digits"],
            )
        if pin in WEAK_PINS:
            return PinValidation(
                is_valid=False,
                errors=["PIN uses a common pattern that is easily guessed"],
                suggestions=[
                    "Avoid sequential numbers (1234), repeated digits (1111), or common patterns"
                ],
            )
        score = strength_score(pin)
        strength = classify(score)
        result = PinValidation(is_valid=True, strength=strength, score=score)
        if strength.rank < self.min_strength.rank:
            result.is_valid = False
            result.errors.append(f"PIN must be at least {self.min_strength.value} strength")
            result.suggestions.append(_STRENGTH_HINTS[self.min_strength])
        elif strength != PinStrength.STRONG:
            result.suggestions.append(_STRENGTH_HINTS[PinStrength.STRONG])
        return result

    def validate_change(self, current_pin: str, new_pin: str, confirm_pin: str) -> PinValidation:
        validation = self.validate(new_pin)
        errors: List[str] = []
        if current_pin == new_pin:
            errors.append("New PIN must be different from current PIN")
        if new_pin != confirm_pin:
            errors.append("PIN confirmation does not match")
        if errors:
            validation.is_valid = False
            validation.errors = errors + validation.errors
        return validation

    # hashing ------------------------------------------------------------

    def hash(self, pin: str) -> str:
        if not self.is_well_formed(pin):
            raise InvalidCredentialFormatError("PIN must be exactly 4 digits")
        validation = self.validate(pin)
        if not validation.is_valid:
            raise InvalidCredentialError(
                "PIN rejected by policy",
                detail={"errors": validation.errors, "suggestions": validation.suggestions},
            )
        return self._hasher.hash(pin)

    def verify(self, pin: str, digest: Optional[str]) -> bool:
        if not self.is_well_formed(pin) or not digest:
            self._dummy_verify()
            return False
        try:
            return self._hasher.verify(digest, pin)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("pin_digest_unusable")
            self._dummy_verify()
            return False

    def dummy_verify(self) -> None:
        """Burn one comparison; used when no account or digest exists."""
        self._dummy_verify()

    def _dummy_verify(self) -> None:
        try:
            self._hasher.verify(self._dummy_hash, "0000")
        except VerifyMismatchError:
            pass

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    # generation ---------------------------------------------------------

    def generate_secure_pin(self) -> str:
        limit = self.settings.pin_generation_max_attempts
        for _ in range(limit):
            candidate = f"{secrets.randbelow(10000):04d}"
            if self.validate(candidate).is_valid:
                return candidate
        raise GenerationExhaustedError(
            "Failed to generate secure PIN after maximum attempts",
            detail={"attempts": limit},
        )

    def generate_unique_pins(self, count: int) -> List[str]:
        pins: List[str] = []
        seen: set[str] = set()
        rounds = 0
        while len(pins) < count:
            rounds += 1
            if rounds > count * self.settings.pin_generation_max_attempts:
                raise GenerationExhaustedError(
                    "Unable to generate enough distinct PINs", detail={"requested": count}
                )
            pin = self.generate_secure_pin()
            if pin not in seen:
                seen.add(pin)
                pins.append(pin)
        return pins

    # lifecycle ----------------------------------------------------------

    def is_expired(
        self,
        changed_at: Optional[datetime],
        max_age_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        if changed_at is None:
            return True
        if changed_at.tzinfo is None:
            changed_at = changed_at.replace(tzinfo=timezone.utc)
        age_limit = timedelta(days=max_age_days or self.settings.pin_expiry_days)
        return (now or datetime.now(timezone.utc)) - changed_at > age_limit

    @staticmethod
    def mask(pin: str) -> str:
        return mask_pin(pin)

    # reporting ----------------------------------------------------------

    def audit_strengths(self, pins: Iterable[str]) -> dict[str, int]:
        counts = {s.value: 0 for s in PinStrength}
        for pin in pins:
            validation = self.validate(pin)
            # Invalid PINs count as weak
            bucket = validation.strength if validation.is_valid else PinStrength.WEAK
            counts[bucket.value] += 1
        return counts

    def security_report(self, pins: Iterable[str], *, total_users: Optional[int] = None) -> dict:
        pins = list(pins)
        counts = self.audit_strengths(pins)
        total = len(pins)
        strong = counts[PinStrength.STRONG.value]
        medium = counts[PinStrength.MEDIUM.value]
        weak = counts[PinStrength.WEAK.value]
        score = (strong * 3 + medium * 2 + weak) / (total * 3) * 100 if total else 0.0
        recommendations = []
        if total and strong / total < 0.5:
            recommendations.append("Encourage more users to use strong PINs")
        if total and weak / total > 0.1:
            recommendations.append("Require weak PIN users to update their PINs")
        recommendations.append(
            f"Consider implementing mandatory PIN rotation every {self.settings.pin_expiry_days} days"
        )
        return {
            "total_users": total_users if total_users is not None else total,
            "pins_analyzed": total,
            "counts": counts,
            "security_score": round(score, 2),
            "recommendations": recommendations,
        }
