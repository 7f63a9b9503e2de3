from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence

FRONT = "front"
BACK = "back"
SIDES = (FRONT, BACK)

MAX_PAIRS = 5


@dataclass
class GroupEntry:
    storage_ref: Path
    side: str  # FRONT or BACK
    sequence: int


@dataclass
class Pair:
    front: Path
    back: Path


@dataclass
class PairingResult:
    pairs: List[Pair]
    incomplete_groups: int


def build_pairs(groups: Sequence[Sequence[GroupEntry]], max_pairs: int = MAX_PAIRS) -> PairingResult:
    """
    Pair the k-th front of each group with the k-th back of the same group.

    Entries inside a group are ordered by arrival sequence first, so the pairing
    follows submission order and not label order. A group whose front and back
    counts differ is counted in ``incomplete_groups`` but still contributes its
    matched prefix. Scanning stops as soon as ``max_pairs`` pairs are collected.
    """
    pairs: List[Pair] = []
    incomplete = 0
    for group in groups:
        if len(pairs) >= max_pairs:
            break
        ordered = sorted(group, key=lambda e: e.sequence)
        fronts = [e for e in ordered if e.side == FRONT]
        backs = [e for e in ordered if e.side == BACK]
        if len(fronts) != len(backs):
            incomplete += 1
        for f, b in zip(fronts, backs):
            if len(pairs) >= max_pairs:
                break
            pairs.append(Pair(front=f.storage_ref, back=b.storage_ref))
    return PairingResult(pairs=pairs, incomplete_groups=incomplete)


def group_summary(groups: Sequence[Sequence[GroupEntry]]) -> List[Dict[str, int]]:
    """Per-group front/back counts for non-empty groups, numbered from 1."""
    out: List[Dict[str, int]] = []
    for i, group in enumerate(groups):
        if not group:
            continue
        out.append({
            "group": i + 1,
            "fronts": sum(1 for e in group if e.side == FRONT),
            "backs": sum(1 for e in group if e.side == BACK),
        })
    return out
