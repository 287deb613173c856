"""Frame-level pitch accuracy metrics.

The functions operate on per-frame frequency arrays where ``0.0`` (or
``NaN`` / ``None`` before conversion) means unvoiced. They depend only on
NumPy.

Metric definitions
------------------

    - ``rpa`` (raw pitch accuracy): fraction of ground-truth voiced frames
      whose estimate lies within ``tolerance_cents`` of the truth.
    - ``gpe`` (gross pitch error): fraction of ground-truth voiced frames
      that are missed or off by more than ``gross_error_threshold`` cents.
    - ``octave_error_rate``: fraction of ground-truth voiced frames whose
      estimate lies within tolerance of double or half the truth.
    - ``voicing_accuracy``: fraction of all frames with the correct
      voiced/unvoiced decision.
    - ``voicing_recall``: fraction of ground-truth voiced frames reported
      as voiced.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np


def as_hz_array(values: Sequence[Optional[float]]) -> np.ndarray:
    """Convert a sequence of frequencies (``None`` / NaN / <= 0 = unvoiced) to a float array with 0.0 for unvoiced."""
    arr = np.array([np.nan if v is None else v for v in values], dtype=np.float64).reshape(-1)
    return np.where(np.isfinite(arr) & (arr > 0.0), arr, 0.0)


def cents_between(detected_hz: np.ndarray, expected_hz: np.ndarray) -> np.ndarray:
    """Signed cents from ``expected_hz`` to ``detected_hz``; ``inf`` where either is unvoiced."""
    d = np.asarray(detected_hz, dtype=np.float64)
    e = np.asarray(expected_hz, dtype=np.float64)
    both = (d > 0.0) & (e > 0.0)
    out = np.full(np.broadcast(d, e).shape, np.inf)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(both, d / np.where(e > 0.0, e, 1.0), 1.0)
        out = np.where(both, 1200.0 * np.log2(ratio), out)
    return out


def _check_lengths(pred: np.ndarray, gt: np.ndarray) -> None:
    if pred.shape[0] != gt.shape[0]:
        raise ValueError(f"Length mismatch: {pred.shape[0]} detections vs {gt.shape[0]} ground truth")


def raw_pitch_accuracy(pred_hz: np.ndarray, gt_hz: np.ndarray, tolerance_cents: float = 50.0) -> float:
    """Compute raw pitch accuracy.

    Parameters
    ----------
    pred_hz : np.ndarray
        Predicted fundamental frequency per frame (Hz, 0 = unvoiced).
    gt_hz : np.ndarray
        Ground-truth fundamental frequency per frame (Hz, 0 = unvoiced).
    tolerance_cents : float
        Maximum absolute deviation counted as correct.

    Returns
    -------
    float
        Fraction of ground-truth voiced frames estimated within
        tolerance; ``0.0`` when no frame is voiced.
    """
    pred_hz = np.asarray(pred_hz, dtype=np.float64)
    gt_hz = np.asarray(gt_hz, dtype=np.float64)
    _check_lengths(pred_hz, gt_hz)
    voiced = gt_hz > 0.0
    if not np.any(voiced):
        return 0.0
    correct = np.abs(cents_between(pred_hz, gt_hz)) <= tolerance_cents
    return float(np.count_nonzero(correct & voiced) / np.count_nonzero(voiced))


def gross_pitch_error(pred_hz: np.ndarray, gt_hz: np.ndarray, threshold_cents: float = 50.0) -> float:
    """Fraction of ground-truth voiced frames missed or off by more than ``threshold_cents``."""
    pred_hz = np.asarray(pred_hz, dtype=np.float64)
    gt_hz = np.asarray(gt_hz, dtype=np.float64)
    _check_lengths(pred_hz, gt_hz)
    voiced = gt_hz > 0.0
    if not np.any(voiced):
        return 0.0
    gross = np.abs(cents_between(pred_hz, gt_hz)) > threshold_cents
    return float(np.count_nonzero(gross & voiced) / np.count_nonzero(voiced))


def octave_error_rate(pred_hz: np.ndarray, gt_hz: np.ndarray, tolerance_cents: float = 50.0) -> float:
    """Fraction of ground-truth voiced frames estimated one octave above or below the truth."""
    pred_hz = np.asarray(pred_hz, dtype=np.float64)
    gt_hz = np.asarray(gt_hz, dtype=np.float64)
    _check_lengths(pred_hz, gt_hz)
    voiced = gt_hz > 0.0
    if not np.any(voiced):
        return 0.0
    up = np.abs(cents_between(pred_hz, gt_hz * 2.0)) <= tolerance_cents
    down = np.abs(cents_between(pred_hz, gt_hz / 2.0)) <= tolerance_cents
    return float(np.count_nonzero((up | down) & voiced) / np.count_nonzero(voiced))


def voicing_accuracy_recall(pred_hz: np.ndarray, gt_hz: np.ndarray) -> Tuple[float, float]:
    """Compute voicing accuracy and recall.

    Parameters
    ----------
    pred_hz : np.ndarray
        Predicted fundamental frequency per frame (Hz).
    gt_hz : np.ndarray
        Ground-truth fundamental frequency per frame (Hz).

    Returns
    -------
    (float, float)
        (accuracy, recall). Accuracy is the fraction of all frames whose
        voiced/unvoiced decision matches the truth; recall is the
        fraction of ground-truth voiced frames predicted as voiced.
    """
    pred_hz = np.asarray(pred_hz, dtype=np.float64)
    gt_hz = np.asarray(gt_hz, dtype=np.float64)
    _check_lengths(pred_hz, gt_hz)
    if gt_hz.size == 0:
        return 0.0, 0.0
    pv = pred_hz > 0.0
    gv = gt_hz > 0.0
    accuracy = float(np.count_nonzero(pv == gv) / gt_hz.size)
    recall = float(np.count_nonzero(pv & gv) / np.count_nonzero(gv)) if np.any(gv) else 0.0
    return accuracy, recall


@dataclass
class FrameResult:
    detected_hz: float
    expected_hz: float
    confidence: Optional[float]
    cents: Optional[float]
    correct: bool
    gross_error: bool
    voicing_correct: bool
    octave_error: bool


class PitchEvaluator:
    """Evaluate detector output against ground truth and compare detectors."""

    COMPARE_KEYS = ("rpa", "gpe", "octave_error_rate", "voicing_accuracy", "mean_abs_cents_error")
    # metrics where a lower value is better
    _LOWER_IS_BETTER = {"gpe", "octave_error_rate", "mean_abs_cents_error"}

    def __init__(self, tolerance_cents: float = 50.0, gross_error_threshold: float = 50.0):
        self.tolerance_cents = float(tolerance_cents)
        self.gross_error_threshold = float(gross_error_threshold)

    def evaluate_frame(
        self, detected_hz: Optional[float], expected_hz: Optional[float], confidence: Optional[float] = None
    ) -> FrameResult:
        d = float(as_hz_array([detected_hz])[0])
        e = float(as_hz_array([expected_hz])[0])
        dv, ev = d > 0.0, e > 0.0

        if not ev:
            return FrameResult(d, e, confidence, None, not dv, False, not dv, False)
        if not dv:
            return FrameResult(d, e, confidence, None, False, True, False, False)

        cents = float(cents_between(np.array(d), np.array(e)))
        up = abs(float(cents_between(np.array(d), np.array(e * 2.0)))) <= self.tolerance_cents
        down = abs(float(cents_between(np.array(d), np.array(e / 2.0)))) <= self.tolerance_cents
        return FrameResult(
            detected_hz=d,
            expected_hz=e,
            confidence=confidence,
            cents=cents,
            correct=abs(cents) <= self.tolerance_cents,
            gross_error=abs(cents) > self.gross_error_threshold,
            voicing_correct=True,
            octave_error=up or down,
        )

    def evaluate(
        self,
        detected_hz: Sequence[Optional[float]],
        expected_hz: Sequence[Optional[float]],
        confidences: Optional[Sequence[Optional[float]]] = None,
    ) -> Tuple[Dict[str, Any], List[FrameResult]]:
        pred = as_hz_array(detected_hz)
        gt = as_hz_array(expected_hz)
        _check_lengths(pred, gt)
        conf = list(confidences) if confidences is not None else [None] * pred.shape[0]

        frames = [self.evaluate_frame(p, g, c) for p, g, c in zip(pred, gt, conf)]

        cents = np.array([f.cents for f in frames if f.cents is not None and np.isfinite(f.cents)])
        conf_correct = [f.confidence for f in frames if f.correct and f.confidence is not None]
        conf_wrong = [
            f.confidence for f in frames if not f.correct and f.gross_error and f.confidence is not None
        ]

        accuracy, recall = voicing_accuracy_recall(pred, gt)
        voiced = gt > 0.0
        metrics: Dict[str, Any] = {
            "rpa": raw_pitch_accuracy(pred, gt, self.tolerance_cents),
            "gpe": gross_pitch_error(pred, gt, self.gross_error_threshold),
            "octave_error_rate": octave_error_rate(pred, gt, self.tolerance_cents),
            "voicing_accuracy": accuracy,
            "voicing_recall": recall,
            "mean_cents_error": float(np.mean(cents)) if cents.size else 0.0,
            "std_cents_error": float(np.std(cents)) if cents.size else None,
            "median_cents_error": float(np.median(cents)) if cents.size else None,
            "mean_abs_cents_error": float(np.mean(np.abs(cents))) if cents.size else 0.0,
            "mean_confidence_correct": float(np.mean(conf_correct)) if conf_correct else None,
            "mean_confidence_incorrect": float(np.mean(conf_wrong)) if conf_wrong else None,
            "total_frames": int(pred.shape[0]),
            "total_voiced_frames": int(np.count_nonzero(voiced)),
            "correct_frames": int(sum(1 for f in frames if f.correct and f.expected_hz > 0.0)),
            "gross_errors": int(sum(1 for f in frames if f.gross_error)),
            "octave_errors": int(sum(1 for f in frames if f.octave_error)),
        }
        if conf_correct and conf_wrong:
            metrics["confidence_discriminates"] = metrics["mean_confidence_correct"] > metrics["mean_confidence_incorrect"]
        else:
            metrics["confidence_discriminates"] = None
        return metrics, frames

    def evaluate_latency(
        self,
        detection_times: Sequence[float],
        detected_hz: Sequence[Optional[float]],
        note_starts: Sequence[float],
        note_freqs: Sequence[float],
    ) -> Dict[str, Any]:
        """Time from each note onset to the first detection within tolerance of that note."""
        times = np.asarray(detection_times, dtype=np.float64)
        pred = as_hz_array(detected_hz)
        latencies: List[float] = []
        for start, freq in zip(note_starts, note_freqs):
            after = times >= start
            hit = after & (np.abs(cents_between(pred, np.full(pred.shape, float(freq)))) <= self.tolerance_cents)
            idx = np.flatnonzero(hit)
            if idx.size:
                latencies.append(float(times[idx[0]] - start))

        n_notes = len(note_starts)
        return {
            "mean_latency": float(np.mean(latencies)) if latencies else None,
            "median_latency": float(np.median(latencies)) if latencies else None,
            "min_latency": float(np.min(latencies)) if latencies else None,
            "max_latency": float(np.max(latencies)) if latencies else None,
            "detected_notes": len(latencies),
            "total_notes": n_notes,
            "detection_rate": len(latencies) / n_notes if n_notes else 0.0,
        }

    def compare(
        self,
        detected_a: Sequence[Optional[float]],
        detected_b: Sequence[Optional[float]],
        expected_hz: Sequence[Optional[float]],
    ) -> Dict[str, Any]:
        metrics_a, _ = self.evaluate(detected_a, expected_hz)
        metrics_b, _ = self.evaluate(detected_b, expected_hz)

        differences: Dict[str, float] = {}
        winner: Dict[str, str] = {}
        for key in self.COMPARE_KEYS:
            diff = float(metrics_b[key]) - float(metrics_a[key])
            differences[key] = diff
            better_b = diff < 0 if key in self._LOWER_IS_BETTER else diff > 0
            better_a = diff > 0 if key in self._LOWER_IS_BETTER else diff < 0
            winner[key] = "detector2" if better_b else ("detector1" if better_a else "tie")

        return {"detector1": metrics_a, "detector2": metrics_b, "differences": differences, "winner": winner}

    def generate_report(self, metrics: Dict[str, Any], detector_name: str = "Detector") -> str:
        def _fmt(v: Optional[float], spec: str = ".1f") -> str:
            return "N/A" if v is None else format(v, spec)

        lines = [
            f"=== {detector_name} Evaluation Report ===",
            "",
            "Accuracy Metrics:",
            f"  Raw Pitch Accuracy (RPA): {metrics['rpa'] * 100:.1f}%",
            f"  Gross Pitch Error (GPE):  {metrics['gpe'] * 100:.1f}%",
            f"  Octave Error Rate:        {metrics['octave_error_rate'] * 100:.1f}%",
            f"  Voicing Accuracy:         {metrics['voicing_accuracy'] * 100:.1f}%",
            "",
            "Pitch Error Statistics:",
            f"  Mean Cents Error:    {_fmt(metrics['mean_cents_error'])} cents",
            f"  Median Cents Error:  {_fmt(metrics['median_cents_error'])} cents",
            f"  Mean Abs Error:      {_fmt(metrics['mean_abs_cents_error'])} cents",
            f"  Std Dev:             {_fmt(metrics['std_cents_error'])} cents",
            "",
            "Frame Counts:",
            f"  Total Frames:        {metrics['total_frames']}",
            f"  Voiced Frames:       {metrics['total_voiced_frames']}",
            f"  Correct Frames:      {metrics['correct_frames']}",
            f"  Gross Errors:        {metrics['gross_errors']}",
        ]
        if metrics.get("confidence_discriminates") is not None:
            lines += [
                "",
                "Confidence Analysis:",
                f"  Mean (correct):   {_fmt(metrics['mean_confidence_correct'], '.3f')}",
                f"  Mean (incorrect): {_fmt(metrics['mean_confidence_incorrect'], '.3f')}",
                f"  Discriminates:    {'Yes' if metrics['confidence_discriminates'] else 'No'}",
            ]
        return "\n".join(lines)
