"""
Offline evaluation of pitch detectors on synthetic signals and recordings.

Runs one or more registered detectors over the synthetic suite (see
:mod:`.synth`), scores each test with :class:`.metrics.PitchEvaluator` and
writes a JSON summary plus text reports. Recordings have no ground truth:
they are segmented into notes (:mod:`.onsets`) and scored on per-note
stability instead.

    python -m pitchengine.benchmarks.runner --detectors primary spectral --compare
    python -m pitchengine.benchmarks.runner --recordings take1.wav --expected-notes 8
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from pitchengine.engine.capture import load_audio
from pitchengine.engine.config import EngineConfig
from pitchengine.engine.detectors import BasePitchDetector, create_detector
from pitchengine.engine.errors import CaptureError, DetectorLoadError
from pitchengine.engine.harmonic import filter_octave_outliers, octave_aware_median
from pitchengine.engine.instrumentation import EngineLogger, _json_default
from pitchengine.engine.utils_config import coalesce_not_none
from pitchengine.engine.models import AudioFrame, DetectorStrategy

from .metrics import PitchEvaluator
from .onsets import NoteSegment, OnsetDetector
from .synth import TestSignal, align_ground_truth, build_test_suite, iter_frames

logger = logging.getLogger(__name__)


class EvaluationRunner:
    def __init__(
        self,
        sample_rate: int = 44100,
        frame_size: int = 4096,
        hop_size: int = 1024,
        evaluator: Optional[PitchEvaluator] = None,
        event_logger: Optional[EngineLogger] = None,
        onset_detector: Optional[OnsetDetector] = None,
    ):
        self.sample_rate = int(sample_rate)
        self.frame_size = int(frame_size)
        self.hop_size = int(hop_size)
        self.evaluator = evaluator or PitchEvaluator()
        self.event_logger = event_logger if event_logger is not None else EngineLogger(base_dir=None)
        self.onset_detector = onset_detector or OnsetDetector(sample_rate=self.sample_rate)
        self.detectors: Dict[str, BasePitchDetector] = {}

    def register_detector(self, name: str, detector: BasePitchDetector) -> None:
        self.detectors[name] = detector

    def _get(self, name: str) -> BasePitchDetector:
        if name not in self.detectors:
            raise KeyError(f"Detector not registered: {name}")
        return self.detectors[name]

    def run_detector(self, detector: BasePitchDetector, audio: np.ndarray, sr: Optional[int] = None) -> Dict[str, np.ndarray]:
        """Frame the signal and collect ``times`` / ``frequencies`` (0 = unvoiced) / ``confidences``."""
        sr = int(coalesce_not_none(sr, self.sample_rate))
        times: List[float] = []
        freqs: List[float] = []
        confs: List[float] = []
        t0 = time.perf_counter()
        for start, frame in iter_frames(audio, sr, self.frame_size, self.hop_size):
            est = detector.detect(AudioFrame(np.asarray(frame, dtype=np.float32), sr, 1000.0 * start))
            times.append(start)
            freqs.append(est.frequency if est.frequency is not None else 0.0)
            confs.append(est.confidence)
        self.event_logger.record_timing(f"detect.{detector.name}", time.perf_counter() - t0)
        return {
            "times": np.asarray(times, dtype=np.float64),
            "frequencies": np.asarray(freqs, dtype=np.float64),
            "confidences": np.asarray(confs, dtype=np.float64),
        }

    def run_synthetic_tests(self, name: str, suite: Optional[Sequence[TestSignal]] = None) -> Dict[str, Any]:
        detector = self._get(name)
        suite = list(suite) if suite is not None else build_test_suite(self.sample_rate)
        results: List[Dict[str, Any]] = []
        for test in suite:
            det = self.run_detector(detector, test.audio, test.sr)
            expected = align_ground_truth(test.gt_times, test.gt_freqs, det["times"])
            metrics, _ = self.evaluator.evaluate(det["frequencies"], expected, det["confidences"])
            results.append({"name": test.name, "type": test.kind, "metrics": metrics, "snr": test.snr_db})
            self.event_logger.log_event(
                "benchmark", "test_done", {"detector": name, "test": test.name, "rpa": metrics["rpa"]}
            )
        return {"detector": name, "tests": results, "summary": self._summarize(results)}

    def compare_detectors(
        self,
        name_a: str,
        name_b: str,
        test: TestSignal,
    ) -> Dict[str, Any]:
        det_a = self.run_detector(self._get(name_a), test.audio, test.sr)
        det_b = self.run_detector(self._get(name_b), test.audio, test.sr)
        expected = align_ground_truth(test.gt_times, test.gt_freqs, det_a["times"])
        comparison = self.evaluator.compare(det_a["frequencies"], det_b["frequencies"], expected)
        comparison["reports"] = {
            "detector1": self.evaluator.generate_report(comparison["detector1"], name_a),
            "detector2": self.evaluator.generate_report(comparison["detector2"], name_b),
        }
        return comparison

    def agreement(self, name_a: str, name_b: str, audio: np.ndarray, sr: Optional[int] = None) -> Dict[str, Any]:
        """Without ground truth: fraction of jointly voiced frames where both detectors agree within 50 cents."""
        fa = self.run_detector(self._get(name_a), audio, sr)["frequencies"]
        fb = self.run_detector(self._get(name_b), audio, sr)["frequencies"]
        both = (fa > 0.0) & (fb > 0.0)
        total = int(np.count_nonzero(both))
        agree = 0
        if total:
            cents = 1200.0 * np.log2(fa[both] / fb[both])
            agree = int(np.count_nonzero(np.abs(cents) <= 50.0))
        return {
            "detector1": name_a,
            "detector2": name_b,
            "agreement_rate": agree / total if total else 0.0,
            "total_voiced_frames": total,
            "agreements": agree,
        }

    # ------------------------------------------------------------------
    # Recordings (no ground truth)
    # ------------------------------------------------------------------
    def evaluate_recording(
        self,
        name: str,
        audio: np.ndarray,
        sr: Optional[int] = None,
        notes: Optional[Sequence[NoteSegment]] = None,
        octave_filter: bool = False,
    ) -> Dict[str, Any]:
        """Per-note pitch stability of one detector over a segmented recording."""
        detector = self._get(name)
        sr = int(coalesce_not_none(sr, self.sample_rate))
        if notes is None:
            notes = self.onset_detector.detect_notes(audio)
        det = self.run_detector(detector, audio, sr)
        # A frame belongs to the note containing its center
        centers = det["times"] + 0.5 * self.frame_size / float(sr)

        note_results: List[Dict[str, Any]] = []
        for note in notes:
            inside = (centers >= note.start_time) & (centers <= note.end_time)
            n_frames = int(np.count_nonzero(inside))
            freqs = det["frequencies"][inside]
            voiced = [float(f) for f in freqs if f > 0.0]
            if not voiced:
                continue
            detection_rate = len(voiced) / n_frames
            if octave_filter:
                voiced = filter_octave_outliers(voiced)
            mean = float(np.mean(voiced))
            std = float(np.std(voiced))
            note_results.append({
                "start_time": note.start_time,
                "end_time": note.end_time,
                "duration": note.duration,
                "mean_frequency": mean,
                "median_frequency": octave_aware_median(voiced),
                "std_dev_cents": 1200.0 * float(np.log2((mean + std) / mean)),
                "detection_rate": detection_rate,
                "num_frames": n_frames,
            })

        return {
            "detector": name,
            "notes": note_results,
            "overall_stability": self._overall_stability(note_results),
        }

    def run_recording(
        self,
        path: str,
        expected_notes: Optional[int] = None,
        detectors: Optional[Sequence[str]] = None,
        octave_filter: bool = False,
    ) -> Dict[str, Any]:
        """Segment the recording at ``path`` once and score every requested detector on it."""
        audio, sr = load_audio(path, self.sample_rate)
        notes = self.onset_detector.detect_notes(audio)
        if expected_notes is not None:
            segmentation = self.onset_detector.validate(notes, expected_notes)
        else:
            segmentation = {"detected_count": len(notes)}
        self.event_logger.log_event("benchmark", "recording_segmented", {"path": path, **segmentation})
        if expected_notes is not None and not segmentation["is_correct"]:
            logger.warning(f"{path}: found {len(notes)} notes, expected {expected_notes}")

        results: Dict[str, Any] = {}
        for name in detectors if detectors is not None else list(self.detectors):
            results[name] = self.evaluate_recording(name, audio, sr, notes, octave_filter=octave_filter)
        return {
            "path": path,
            "sample_rate": sr,
            "duration_sec": audio.shape[0] / float(sr),
            "segmentation": segmentation,
            "segments": [n.to_dict() for n in notes],
            "detectors": results,
        }

    @staticmethod
    def _overall_stability(note_results: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not note_results:
            return None
        return {
            "mean_cents_std": float(np.mean([n["std_dev_cents"] for n in note_results])),
            "mean_detection_rate": float(np.mean([n["detection_rate"] for n in note_results])),
            "num_notes": len(note_results),
        }

    def run_ab_comparison(self, name_a: str, name_b: str, suite: Optional[Sequence[TestSignal]] = None) -> Dict[str, Any]:
        suite = list(suite) if suite is not None else build_test_suite(self.sample_rate)
        tests = []
        for test in suite:
            comp = self.compare_detectors(name_a, name_b, test)
            comp.update({"test_name": test.name, "test_type": test.kind})
            tests.append(comp)

        by_metric = {k: {"detector1_wins": 0, "detector2_wins": 0, "ties": 0} for k in ("rpa", "gpe", "octave_error_rate")}
        for comp in tests:
            for key, counts in by_metric.items():
                w = comp["winner"][key]
                if w == "detector1":
                    counts["detector1_wins"] += 1
                elif w == "detector2":
                    counts["detector2_wins"] += 1
                else:
                    counts["ties"] += 1

        rpa = by_metric["rpa"]
        if rpa["detector1_wins"] > rpa["detector2_wins"]:
            overall = name_a
        elif rpa["detector2_wins"] > rpa["detector1_wins"]:
            overall = name_b
        else:
            overall = "tie"

        return {
            "detector1": name_a,
            "detector2": name_b,
            "tests": tests,
            "summary": {"by_metric": by_metric, "overall_winner": overall, "total_tests": len(tests)},
        }

    @staticmethod
    def generate_comparison_report(comparison: Dict[str, Any]) -> str:
        a, b = comparison["detector1"], comparison["detector2"]
        lines = ["=== A/B Comparison Report ===", f"Detector 1: {a}", f"Detector 2: {b}", "", "Summary:"]
        for metric, data in comparison["summary"]["by_metric"].items():
            lines.append(f"  {metric}:")
            lines.append(f"    {a} wins: {data['detector1_wins']}")
            lines.append(f"    {b} wins: {data['detector2_wins']}")
            lines.append(f"    Ties: {data['ties']}")
        lines += ["", f"Overall Winner: {comparison['summary']['overall_winner']}", "", "Test Results:"]
        for t in comparison["tests"]:
            lines.append(
                f"  {t['test_name']}: {t['detector1']['rpa'] * 100:.1f}% vs {t['detector2']['rpa'] * 100:.1f}%"
            )
        return "\n".join(lines)

    @staticmethod
    def _summarize(results: List[Dict[str, Any]]) -> Dict[str, Any]:
        by_type: Dict[str, Dict[str, Any]] = {}
        for r in results:
            entry = by_type.setdefault(r["type"], {"count": 0, "rpa": [], "gpe": []})
            entry["count"] += 1
            entry["rpa"].append(r["metrics"]["rpa"])
            entry["gpe"].append(r["metrics"]["gpe"])
        return {
            "total_tests": len(results),
            "by_type": {
                k: {"count": v["count"], "mean_rpa": float(np.mean(v["rpa"])), "mean_gpe": float(np.mean(v["gpe"]))}
                for k, v in by_type.items()
            },
            "overall_rpa": float(np.mean([r["metrics"]["rpa"] for r in results])) if results else 0.0,
            "overall_gpe": float(np.mean([r["metrics"]["gpe"] for r in results])) if results else 0.0,
        }

    @staticmethod
    def export_json(results: Dict[str, Any], path: str) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2, default=_json_default)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Evaluate pitch detectors on synthetic signals or recordings.")
    parser.add_argument("--output", default=f"results/pitch_eval_{int(time.time())}")
    parser.add_argument(
        "--detectors",
        nargs="+",
        choices=[s.value for s in DetectorStrategy],
        default=[s.value for s in DetectorStrategy],
    )
    parser.add_argument("--sample-rate", type=int, default=44100)
    parser.add_argument("--frame-size", type=int, default=4096)
    parser.add_argument("--hop-size", type=int, default=1024)
    parser.add_argument("--seed", type=int, default=0, help="Seed for the noisy test signals.")
    parser.add_argument("--quick", action="store_true", help="Run a reduced test suite.")
    parser.add_argument("--compare", action="store_true", help="A/B compare the first two detectors.")
    parser.add_argument("--config", help="Inline JSON engine config overrides (flat or dotted keys).")
    parser.add_argument(
        "--recordings",
        nargs="+",
        metavar="PATH",
        help="Audio files to segment and score instead of the synthetic suite.",
    )
    parser.add_argument("--expected-notes", type=int, help="Expected note count per recording.")
    parser.add_argument(
        "--octave-filter", action="store_true", help="Drop octave outliers before per-note statistics."
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        overrides = json.loads(args.config) if args.config else {}
    except json.JSONDecodeError as exc:
        logger.error(f"Invalid JSON for --config: {exc}")
        return 1
    overrides.setdefault("buffer_size", args.frame_size)
    config = EngineConfig.from_dict(overrides)

    runner = EvaluationRunner(
        sample_rate=args.sample_rate,
        frame_size=args.frame_size,
        hop_size=args.hop_size,
        event_logger=EngineLogger(
            base_dir=os.path.dirname(os.path.abspath(args.output)),
            run_name=os.path.basename(os.path.normpath(args.output)),
        ),
    )
    for name in args.detectors:
        detector = create_detector(DetectorStrategy(name), config, args.sample_rate)
        try:
            detector.initialize()
        except DetectorLoadError as exc:
            logger.warning(f"Skipping {name}: {exc}")
            continue
        runner.register_detector(name, detector)

    if not runner.detectors:
        logger.error("No detector could be loaded")
        return 1

    results: Dict[str, Any] = {"config": config.to_dict(), "detectors": {}}
    if args.recordings:
        results["recordings"] = []
        for path in args.recordings:
            try:
                rec = runner.run_recording(path, args.expected_notes, octave_filter=args.octave_filter)
            except CaptureError as exc:
                logger.error(str(exc))
                return 1
            results["recordings"].append(rec)
            for name, res in rec["detectors"].items():
                s = res["overall_stability"]
                if s is None:
                    logger.info(f"{path} / {name}: no voiced notes")
                else:
                    logger.info(
                        f"{path} / {name}: {s['num_notes']} notes, "
                        f"mean std {s['mean_cents_std']:.1f} cents, detection {s['mean_detection_rate'] * 100:.1f}%"
                    )
        return _finish(runner, results)

    suite = build_test_suite(args.sample_rate, seed=args.seed, quick=args.quick)
    for name in runner.detectors:
        res = runner.run_synthetic_tests(name, suite)
        results["detectors"][name] = res
        s = res["summary"]
        logger.info(f"{name}: overall RPA {s['overall_rpa'] * 100:.1f}%, GPE {s['overall_gpe'] * 100:.1f}%")

    names = list(runner.detectors)
    if args.compare and len(names) >= 2:
        comparison = runner.run_ab_comparison(names[0], names[1], suite)
        results["comparison"] = comparison["summary"]
        report = runner.generate_comparison_report(comparison)
        print(report)
        with open(os.path.join(runner.event_logger.run_dir, "comparison.txt"), "w", encoding="utf-8") as f:
            f.write(report + "\n")

    return _finish(runner, results)


def _finish(runner: EvaluationRunner, results: Dict[str, Any]) -> int:
    runner.export_json(results, os.path.join(runner.event_logger.run_dir, "summary.json"))
    runner.event_logger.finalize()
    logger.info(f"Results written to {runner.event_logger.run_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
