from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

import numpy as np

from services.geometry import BBox, iou
from utils.parsing import _clamp01, _normalize_token, _round3


@dataclass
class MatchResult:
    matched_pred: Set[int] = field(default_factory=set)
    matched_gold: Set[int] = field(default_factory=set)
    matches: List[Dict[str, Any]] = field(default_factory=list)


def _greedy_match_by_type_impl(
    predictions: Sequence[Mapping[str, Any]],
    gold_concerns: Sequence[Mapping[str, Any]],
    iou_threshold: float,
    *,
    iou_fn: Callable[[Optional[BBox], Optional[BBox]], float] = iou,
) -> MatchResult:
    """
    One-to-one greedy matching of predictions onto gold concerns.

    Predictions are visited in order; each claims the unclaimed gold concern of
    the same type with the highest IoU at or above ``iou_threshold``. Ties keep
    the earlier gold index.
    """
    result = MatchResult()
    for p_idx, pred in enumerate(predictions or []):
        best_gold = -1
        best_iou = 0.0
        for g_idx, target in enumerate(gold_concerns or []):
            if g_idx in result.matched_gold:
                continue
            if pred.get("type") != target.get("type"):
                continue
            overlap = iou_fn(pred.get("bbox"), target.get("bbox"))
            if overlap >= iou_threshold and overlap > best_iou:
                best_iou = overlap
                best_gold = g_idx
        if best_gold >= 0:
            result.matched_pred.add(p_idx)
            result.matched_gold.add(best_gold)
            result.matches.append(
                {
                    "pred_index": p_idx,
                    "gold_index": best_gold,
                    "iou": _round3(best_iou),
                    "type": pred.get("type"),
                }
            )
    return result


def _selected_probabilities(samples: Sequence[Mapping[str, Any]], selector: Callable[[Mapping[str, Any]], Any]) -> np.ndarray:
    return np.asarray([_clamp01(selector(sample)) for sample in samples], dtype=float)


def _labels(samples: Sequence[Mapping[str, Any]]) -> np.ndarray:
    return np.asarray([_clamp01(sample.get("label")) for sample in samples], dtype=float)


def _compute_brier_impl(samples: Sequence[Mapping[str, Any]], selector: Callable[[Mapping[str, Any]], Any]) -> float:
    if not samples:
        return 0.0
    diff = _selected_probabilities(samples, selector) - _labels(samples)
    return _round3(float(np.mean(diff * diff)))


def _compute_ece_impl(
    samples: Sequence[Mapping[str, Any]],
    selector: Callable[[Mapping[str, Any]], Any],
    bin_count: int = 10,
) -> float:
    """Expected calibration error over equal-width confidence bins."""
    if not samples:
        return 0.0
    bins = max(2, int(bin_count))
    probs = _selected_probabilities(samples, selector)
    labels = _labels(samples)
    idx = np.minimum(bins - 1, np.floor(probs * bins).astype(int))
    counts = np.bincount(idx, minlength=bins).astype(float)
    conf_sum = np.bincount(idx, weights=probs, minlength=bins)
    acc_sum = np.bincount(idx, weights=labels, minlength=bins)
    filled = counts > 0
    gaps = np.abs(conf_sum[filled] / counts[filled] - acc_sum[filled] / counts[filled])
    ece = float(np.sum((counts[filled] / len(samples)) * gaps))
    return _round3(ece)


def _compute_grouped_ece_impl(
    rows: Sequence[Mapping[str, Any]],
    selector: Callable[[Mapping[str, Any]], Any],
    group_fields: Sequence[str] = (),
) -> Dict[str, Dict[str, Any]]:
    groups: Dict[str, List[Mapping[str, Any]]] = {}
    for row in rows or []:
        key = "|".join(_normalize_token(row.get(name), "unknown") for name in group_fields)
        groups.setdefault(key, []).append(row)
    return {
        key: {
            "samples": len(samples),
            "ece": _compute_ece_impl(samples, selector, 10),
            "brier": _compute_brier_impl(samples, selector),
        }
        for key, samples in groups.items()
    }


def _precision_recall_f1(tp: float, fp: float, fn: float) -> Dict[str, float]:
    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    f1 = 2.0 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
    return {"precision": precision, "recall": recall, "f1": f1}
