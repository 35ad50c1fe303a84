"""
Identifier space logic.

Identifiers have four dash-joined fields drawn from fixed tables:
Classification (8) x Slot (100) x Descriptor (80) x Marker (60), for a total
of 3,840,000 systematic values. Candidates are biased towards a participant's
trait profile and varied by attempt number; every accepted value is reserved
in the identifier record table before it is returned.
"""

import logging
import math
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from config.config import IdentifierConfig
from src.data.models import Trait
from src.data.repositories import IdentifierRecordRepository
from src.data.schemas import AssignmentStats, IdentifierDecoding, IdentifierRecordCreate
from src.exceptions import IdentifierSpaceExhaustedError

logger = logging.getLogger(__name__)

CLASSIFICATIONS = ("SUBJ", "ID", "TEST", "#", "UNIT", "NODE", "CASE", "SPEC")

CLASSIFICATION_MEANINGS = {
    "SUBJ": "Standard Subject",
    "ID": "Identification Phase",
    "TEST": "Active Testing",
    "#": "Processed/Numbered",
    "UNIT": "Operational Unit",
    "NODE": "Network Connection Point",
    "CASE": "Case Study",
    "SPEC": "Special Designation",
}

# A1..R5 followed by the ten repeated digits
SLOTS = tuple(
    [f"{letter}{n}" for letter in "ABCDEFGHIJKLMNOPQR" for n in range(1, 6)]
    + [f"{d}{d}" for d in range(10)]
)

DESCRIPTORS = (
    "SEEING", "BLIND", "AWAKE", "SLEEP", "LOOP", "CYCLE", "STATIC", "SIGNAL",
    "VOID", "NULL", "PRIME", "ZERO", "ECHO", "FADE", "BURN", "DRIFT",
    "COUNT", "WATCH", "WAIT", "KNOW", "FORGET", "BREAK", "MEND", "SEEK",
    "TRUTH", "FALSE", "REAL", "FAKE", "DEEP", "SHALLOW", "CLEAR", "BLUR",
    "PATTERN", "CHAOS", "ORDER", "FLUX", "NODE", "LINK", "PATH", "MAZE",
    "MIRROR", "SHARD", "WHOLE", "PART", "START", "END", "BETWEEN", "BEYOND",
    "PULSE", "WAVE", "SHIFT", "TURN", "RISE", "FALL", "CLIMB", "DIVE",
    "OPEN", "CLOSE", "LOCK", "KEY", "DOOR", "WALL", "BRIDGE", "GAP",
    "LIGHT", "DARK", "SHADE", "GLOW", "SPARK", "FLAME", "ASH", "DUST",
    "WIND", "STORM", "CALM", "STILL", "MOVE", "STOP", "FLOW", "BLOCK",
)

MARKERS = (
    "░", "▦", "⋫", "⋢", "◈", "ж", "Ƹ", "Ξ", "∀", "๑",
    "☼", "ஐ", "⋝", "⋜", "⋪", "█", "╩", "▪", "▫", "□",
    "‖", "﹉", "๏", "∩", "▓", "回", "⋖", "⋗", "✚", "▧",
    "≋", "≈", "∴", "∵", "∃", "∄", "∅", "∆", "∇", "∈",
    "∉", "∋", "∌", "∑", "∏", "∐", "∫", "∬", "∭", "∮",
    "∯", "∰", "∱", "∲", "∳", "⊕", "⊖", "⊗", "⊘", "⊙",
)

TOTAL_SPACE = len(CLASSIFICATIONS) * len(SLOTS) * len(DESCRIPTORS) * len(MARKERS)

# Tie-break order for dominant/secondary trait selection
TRAIT_PRIORITY = (Trait.SEEKER, Trait.ISOLATED, Trait.AWARE, Trait.LOST)
DEFAULT_TRAIT = Trait.LOST

TRAIT_CLASSIFICATIONS = {
    Trait.SEEKER: ("TEST", "SPEC", "CASE"),
    Trait.ISOLATED: ("SUBJ", "#", "UNIT"),
    Trait.AWARE: ("NODE", "SPEC", "TEST"),
    Trait.LOST: ("ID", "SUBJ", "#"),
}

TRAIT_DESCRIPTORS = {
    Trait.SEEKER: (
        "SEEING", "TRUTH", "SEEK", "PATTERN", "KNOW", "REAL", "CLEAR", "DEEP",
        "WATCH", "COUNT", "BREAK", "OPEN", "KEY", "PATH", "LINK", "PRIME",
    ),
    Trait.ISOLATED: (
        "VOID", "NULL", "FADE", "DRIFT", "BETWEEN", "BEYOND", "SHARD", "PART",
        "BLIND", "SLEEP", "FORGET", "CLOSE", "WALL", "GAP", "DARK", "ASH",
    ),
    Trait.AWARE: (
        "AWAKE", "SIGNAL", "ECHO", "PULSE", "WAVE", "GLOW", "SPARK", "LIGHT",
        "MIRROR", "WHOLE", "START", "RISE", "FLOW", "SHIFT", "TURN", "BRIDGE",
    ),
    Trait.LOST: (
        "STATIC", "LOOP", "CYCLE", "CHAOS", "FLUX", "MAZE", "BURN", "BLUR",
        "WAIT", "MEND", "FALSE", "FAKE", "SHALLOW", "END", "FALL", "STOP",
    ),
}

AWARE_SECONDARY_BONUS = 5
MARKER_BAND_SIZE = 20
HIGH_AWARENESS_TOTAL = 12
MEDIUM_AWARENESS_TOTAL = 8

FALLBACK_PREFIXES = {
    Trait.SEEKER: "SEEK",
    Trait.ISOLATED: "SUBJ",
    Trait.AWARE: "NODE",
    Trait.LOST: "LOST",
}

_FALLBACK_PATTERN = re.compile(r"^[A-Z]+-\d{4}-[A-Z]+\d*-.+$")


def _ranked_traits(scores: Mapping[str, int] | None) -> list[Trait]:
    """Traits ordered by score descending, ties resolved by TRAIT_PRIORITY."""
    scores = scores or {}
    return sorted(
        TRAIT_PRIORITY,
        key=lambda trait: (-int(scores.get(trait.value, 0) or 0), TRAIT_PRIORITY.index(trait)),
    )


def dominant_trait(scores: Mapping[str, int] | None) -> Trait:
    """Highest-scoring trait; an empty profile maps to the default trait."""
    if not scores:
        return DEFAULT_TRAIT
    return _ranked_traits(scores)[0]


def secondary_trait(scores: Mapping[str, int] | None) -> Trait:
    """Second-highest trait; an empty profile maps to the default trait."""
    if not scores:
        return DEFAULT_TRAIT
    return _ranked_traits(scores)[1]


def total_score(scores: Mapping[str, int] | None) -> int:
    return sum(int(v or 0) for v in (scores or {}).values())


def marker_band(total: int) -> tuple[str, ...]:
    """The 20-entry marker band for a total score."""
    if total >= HIGH_AWARENESS_TOTAL:
        start = 2 * MARKER_BAND_SIZE
    elif total >= MEDIUM_AWARENESS_TOTAL:
        start = MARKER_BAND_SIZE
    else:
        start = 0
    return MARKERS[start:start + MARKER_BAND_SIZE]


def build_candidate(scores: Mapping[str, int] | None, attempt: int) -> str:
    """
    Profile-biased candidate for a given attempt (1-based).

    Args:
        scores: trait key -> score
        attempt: attempt number starting at 1

    Returns:
        str: four dash-joined fields from the canonical tables
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")

    trait = dominant_trait(scores)
    total = total_score(scores)

    classifications = TRAIT_CLASSIFICATIONS[trait]
    classification = classifications[(attempt - 1) % len(classifications)]

    slot = SLOTS[math.floor(total * 12.5 + attempt * 7) % len(SLOTS)]

    bonus = AWARE_SECONDARY_BONUS if secondary_trait(scores) == Trait.AWARE else 0
    descriptors = TRAIT_DESCRIPTORS[trait]
    descriptor = descriptors[(attempt * 3 + bonus) % len(descriptors)]

    band = marker_band(total)
    marker = band[(attempt * 7) % len(band)]

    return "-".join((classification, slot, descriptor, marker))


def random_candidate(rng: random.Random) -> str:
    """Uniform draw across the full space."""
    return "-".join(
        (
            rng.choice(CLASSIFICATIONS),
            rng.choice(SLOTS),
            rng.choice(DESCRIPTORS),
            rng.choice(MARKERS),
        )
    )


def fallback_identifier(
    scores: Mapping[str, int] | None,
    timestamp_ms: int,
    tag: str = "TEMP",
    marker: str = "∅",
    sequence: int = 0,
) -> str:
    """Out-of-space value tagged so it can never pass as systematic."""
    prefix = FALLBACK_PREFIXES[dominant_trait(scores)]
    stamp = f"{timestamp_ms % 10000:04d}"
    suffix = f"{tag}{sequence}" if sequence else tag
    return f"{prefix}-{stamp}-{suffix}-{marker}"


def split_identifier(value: str) -> tuple[str, str, str, str] | None:
    """Four fields or None when the shape does not match."""
    if not value or not isinstance(value, str):
        return None
    parts = value.split("-")
    if len(parts) != 4:
        return None
    return parts[0], parts[1], parts[2], parts[3]


def is_systematic_identifier(value: str) -> bool:
    """True when every field comes from its canonical table."""
    parts = split_identifier(value)
    if parts is None:
        return False
    classification, slot, descriptor, marker = parts
    return (
        classification in CLASSIFICATIONS
        and slot in SLOTS
        and descriptor in DESCRIPTORS
        and marker in MARKERS
    )


def is_fallback_identifier(value: str, tag: str = "TEMP") -> bool:
    """True for tagged out-of-space values."""
    if not value or is_systematic_identifier(value):
        return False
    parts = split_identifier(value)
    if parts is None or not _FALLBACK_PATTERN.match(value):
        return False
    return parts[2].startswith(tag)


def decode_identifier(value: str) -> IdentifierDecoding:
    """Break an identifier into its fields with the classification meaning."""
    if is_systematic_identifier(value):
        classification, slot, descriptor, marker = split_identifier(value)
        return IdentifierDecoding(
            identifier=value,
            is_systematic=True,
            classification=classification,
            classification_meaning=CLASSIFICATION_MEANINGS[classification],
            slot=slot,
            descriptor=descriptor,
            marker=marker,
        )
    return IdentifierDecoding(
        identifier=value or "",
        is_systematic=False,
        is_fallback=is_fallback_identifier(value),
    )


@dataclass
class GeneratedIdentifier:
    """Result of a successful reservation."""

    identifier: str
    attempts: int
    source: str  # "systematic", "random" or "fallback"
    dominant_trait: Trait
    profile_snapshot: dict[str, Any] = field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


class IdentifierSpaceGenerator:
    """Draws candidates and reserves the first free one."""

    def __init__(
        self,
        record_repository: IdentifierRecordRepository,
        identifier_config: IdentifierConfig | None = None,
        rng: random.Random | None = None,
        clock=None,
    ):
        self.record_repository = record_repository
        self.config = identifier_config or IdentifierConfig()
        self.rng = rng or random.Random()
        self._clock = clock or (lambda: int(time.time() * 1000))

    def is_available(self, candidate: str, displayed_identifiers: Iterable[str] = ()) -> bool:
        """A candidate is free when no one in the group shows it and it was never reserved."""
        if candidate in set(displayed_identifiers):
            return False
        return not self.record_repository.is_reserved(candidate)

    def _reserve(
        self,
        candidate: str,
        group_id: str,
        participant_id: str | None,
        snapshot: dict[str, Any],
        attempts: int,
        is_fallback: bool = False,
    ) -> bool:
        record = self.record_repository.insert_if_absent(
            IdentifierRecordCreate(
                identifier=candidate,
                group_id=group_id,
                participant_id=participant_id,
                profile_snapshot=snapshot,
                is_fallback=is_fallback,
                attempts=attempts,
            )
        )
        return record is not None

    def generate(
        self,
        scores: Mapping[str, int] | None,
        group_id: str,
        participant_id: str | None = None,
        displayed_identifiers: Iterable[str] = (),
        answers: list[dict[str, Any]] | None = None,
    ) -> GeneratedIdentifier:
        """
        Reserve a unique identifier for a profile.

        Tries profile-biased candidates for attempts 1..max_attempts, then
        uniform random draws, then a tagged timestamp fallback.

        Raises:
            IdentifierSpaceExhaustedError: If even the fallback values collide
        """
        displayed = set(displayed_identifiers)
        trait = dominant_trait(scores)
        snapshot = {
            "trait_scores": dict(scores or {}),
            "answers": list(answers or []),
            "dominant_trait": trait.value,
        }

        for attempt in range(1, self.config.max_attempts + 1):
            candidate = build_candidate(scores, attempt)
            if not self.is_available(candidate, displayed):
                logger.debug(f"Identifier {candidate} unavailable (attempt {attempt})")
                continue
            if self._reserve(candidate, group_id, participant_id, snapshot, attempt):
                logger.info(f"Reserved identifier {candidate} (attempt {attempt})")
                return GeneratedIdentifier(candidate, attempt, "systematic", trait, snapshot)
            logger.info(f"Identifier {candidate} taken concurrently (attempt {attempt})")

        attempts = self.config.max_attempts
        for _ in range(self.config.random_draws):
            attempts += 1
            candidate = random_candidate(self.rng)
            if self.is_available(candidate, displayed) and self._reserve(
                candidate, group_id, participant_id, snapshot, attempts
            ):
                logger.warning(
                    f"Using random identifier {candidate} after {self.config.max_attempts} attempts"
                )
                return GeneratedIdentifier(candidate, attempts, "random", trait, snapshot)

        timestamp_ms = self._clock()
        for sequence in range(self.config.max_fallback_attempts):
            attempts += 1
            candidate = fallback_identifier(
                scores,
                timestamp_ms,
                tag=self.config.fallback_tag,
                marker=self.config.fallback_marker,
                sequence=sequence,
            )
            if candidate in displayed:
                continue
            if self._reserve(candidate, group_id, participant_id, snapshot, attempts, is_fallback=True):
                logger.warning(
                    f"Identifier space anomaly: using fallback identifier {candidate} "
                    f"for participant {participant_id} in group {group_id}"
                )
                return GeneratedIdentifier(candidate, attempts, "fallback", trait, snapshot)

        logger.critical(f"Unable to reserve any identifier for participant {participant_id}")
        raise IdentifierSpaceExhaustedError(attempts)

    def assignment_stats(self, group_id: str | None = None) -> AssignmentStats:
        """Utilization of the identifier space."""
        identifiers = self.record_repository.list_identifiers(group_id)
        systematic = [split_identifier(value) for value in identifiers if is_systematic_identifier(value)]
        total = len(identifiers)
        return AssignmentStats(
            total_assigned=total,
            total_space=TOTAL_SPACE,
            remaining=max(TOTAL_SPACE - len(systematic), 0),
            utilization_percent=round(len(systematic) / TOTAL_SPACE * 100, 4),
            fallback_count=self.record_repository.count_fallbacks(group_id),
            classifications_used=len({parts[0] for parts in systematic}),
            slots_used=len({parts[1] for parts in systematic}),
            descriptors_used=len({parts[2] for parts in systematic}),
            markers_used=len({parts[3] for parts in systematic}),
            last_assignment=self.record_repository.last_assignment(group_id),
        )
