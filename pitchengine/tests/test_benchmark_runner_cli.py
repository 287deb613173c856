import json
import subprocess
import sys
from pathlib import Path

import soundfile as sf

from pitchengine.benchmarks.runner import main
from pitchengine.tests.audio_utils import generate_note_sequence

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def test_quick_spectral_run(tmp_path: Path):
    out = tmp_path / "eval"
    assert main(["--quick", "--detectors", "spectral", "--output", str(out)]) == 0

    summary = json.loads((out / "summary.json").read_text())
    assert "spectral" in summary["detectors"]
    assert summary["config"]["buffer_size"] == 4096
    # numpy scalars in the metrics must land as JSON numbers, not strings
    first = summary["detectors"]["spectral"]["tests"][0]["metrics"]
    assert isinstance(first["rpa"], float)
    assert isinstance(summary["detectors"]["spectral"]["summary"]["overall_rpa"], float)

    assert (out / "events.jsonl").exists()
    timing = json.loads((out / "timing.json").read_text())
    assert "detect.spectral" in timing


def test_module_entry_point(tmp_path: Path):
    output_dir = tmp_path / "benchmarks"
    cmd = [
        sys.executable,
        "-m",
        "pitchengine.benchmarks.runner",
        "--quick",
        "--detectors",
        "spectral",
        "--output",
        str(output_dir),
    ]
    result = subprocess.run(cmd, capture_output=True, text=True, cwd=str(PROJECT_ROOT))
    assert result.returncode == 0, result.stderr
    assert (output_dir / "summary.json").exists(), "Summary not generated"


def test_invalid_config_json(tmp_path: Path):
    assert main(["--detectors", "spectral", "--config", "{not json", "--output", str(tmp_path / "x")]) == 1


def test_recordings(tmp_path: Path):
    audio, _ = generate_note_sequence([262.0, 330.0, 392.0], sr=44100)
    wav = tmp_path / "take.wav"
    sf.write(str(wav), audio, 44100)
    out = tmp_path / "rec"

    code = main([
        "--detectors", "spectral",
        "--recordings", str(wav),
        "--expected-notes", "3",
        "--octave-filter",
        "--output", str(out),
    ])
    assert code == 0

    summary = json.loads((out / "summary.json").read_text())
    rec = summary["recordings"][0]
    assert rec["path"] == str(wav)
    assert rec["segmentation"]["is_correct"] is True
    assert rec["detectors"]["spectral"]["overall_stability"]["num_notes"] == 3
    # recordings replace the synthetic suite
    assert summary["detectors"] == {}


def test_missing_recording(tmp_path: Path):
    code = main([
        "--detectors", "spectral",
        "--recordings", str(tmp_path / "missing.wav"),
        "--output", str(tmp_path / "rec"),
    ])
    assert code == 1
