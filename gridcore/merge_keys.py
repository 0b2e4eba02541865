from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from gridcore.config import DEFAULT_SETTINGS, EngineSettings, MergeSpec
from gridcore.errors import MergeAmbiguityError
from gridcore.values import Record, is_non_empty, is_record, normalize_for_key

logger = logging.getLogger(__name__)

PRESERVE_PATTERN = re.compile(r"name|team|hq|location|title|label", re.IGNORECASE)

NAME_BONUSES = (
    ("code", 800),
    ("key", 700),
    ("uuid", 900),
    ("date", 300),
)


@dataclass(frozen=True)
class MergeInference:
    spec: MergeSpec
    ambiguous: bool = False
    uniqueness: float = 0.0
    scores: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {**self.spec.to_dict(), "ambiguous": self.ambiguous, "uniqueness": round(self.uniqueness, 4)}


def score_key(key: str, frequency: int) -> int:
    kl = key.lower()
    score = frequency
    if kl == "id" or kl.endswith("id"):
        score += 1000
    for token, bonus in NAME_BONUSES:
        if token in kl:
            score += bonus
    return score


def key_frequencies(sample: Sequence[Record]) -> Dict[str, int]:
    freq: Dict[str, int] = {}
    for row in sample:
        if not is_record(row):
            continue
        for k, v in row.items():
            freq[k] = freq.get(k, 0) + (1 if is_non_empty(v) else 0)
    return freq


def uniqueness_ratio(sample: Sequence[Record], fields: Sequence[str]) -> float:
    seen = set()
    total = 0
    for row in sample:
        if not is_record(row):
            continue
        parts = [normalize_for_key(row.get(f)) for f in fields]
        if not any(parts):
            continue
        seen.add("||".join(parts))
        total += 1
    if total == 0:
        return 0.0
    return len(seen) / total


def preserve_candidates(sorted_keys: Sequence[str], merge_by: Sequence[str], limit: int) -> List[str]:
    return [k for k in sorted_keys if k not in merge_by and PRESERVE_PATTERN.search(k)][:limit]


def infer_merge_spec(records: Sequence[Record], *, settings: EngineSettings = DEFAULT_SETTINGS) -> MergeInference:
    """Guess which field(s) identify an entity across sources.

    Best-effort: when nothing clears the uniqueness thresholds the highest
    scored key is used and the result is flagged ``ambiguous``.
    """
    sample = [r for r in list(records)[: settings.sample_size] if is_record(r)]
    freq = key_frequencies(sample)
    scores = {k: score_key(k, n) for k, n in freq.items()}
    ordered = sorted(freq, key=lambda k: -scores[k])

    def _result(merge_by: List[str], ratio: float, ambiguous: bool = False) -> MergeInference:
        spec = MergeSpec(
            merge_by=tuple(merge_by),
            preserve=tuple(preserve_candidates(ordered, merge_by, settings.preserve_limit)),
        )
        logger.info("merge keys inferred: mergeBy=%s preserve=%s ratio=%.3f", list(spec.merge_by), list(spec.preserve), ratio)
        return MergeInference(spec=spec, ambiguous=ambiguous, uniqueness=ratio, scores=scores)

    for k in ordered[: settings.single_key_candidates]:
        ratio = uniqueness_ratio(sample, [k])
        if ratio >= settings.single_key_threshold:
            return _result([k], ratio)

    anchors = min(settings.pair_key_anchors, len(ordered))
    limit = min(settings.pair_key_candidates, len(ordered))
    for i in range(anchors):
        for j in range(i + 1, limit):
            pair = [ordered[i], ordered[j]]
            ratio = uniqueness_ratio(sample, pair)
            if ratio >= settings.pair_key_threshold:
                return _result(pair, ratio)

    if ordered:
        logger.warning("%s", MergeAmbiguityError(f"no merge key cleared the uniqueness thresholds; falling back to {ordered[0]!r}"))
        return _result([ordered[0]], uniqueness_ratio(sample, [ordered[0]]), ambiguous=True)
    return MergeInference(spec=MergeSpec(), ambiguous=True, scores=scores)
