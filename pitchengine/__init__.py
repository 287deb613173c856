"""Real-time monophonic vocal pitch engine.

The engine lives in ``pitchengine.engine``; the offline evaluation harness
(synthetic signals, accuracy metrics, runner CLI) in
``pitchengine.benchmarks``.
"""

__version__ = "0.3.0"
