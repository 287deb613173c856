"""Offline evaluation harness for the pitch detectors.

Synthetic signals with known ground truth (``synth``), frame-level pitch
metrics (``metrics``), note segmentation for recordings (``onsets``) and a
runner / CLI that scores registered detectors (``runner``). Run via
``python -m pitchengine.benchmarks.runner``; results are written under
``results/``.
"""

# Nothing is executed on import; see individual modules for details.
