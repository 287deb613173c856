# pitchengine/engine/frequency.py
"""Frequency / MIDI / note-name helpers (A4 = 440 Hz, MIDI 69)."""
from __future__ import annotations

import re
from typing import Any, Dict

import numpy as np

A4_FREQUENCY = 440.0
A4_MIDI = 69
NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

SCALE_INTERVALS = {
    "major": [0, 2, 4, 5, 7, 9, 11, 12],
    "minor": [0, 2, 3, 5, 7, 8, 10, 12],
    "dorian": [0, 2, 3, 5, 7, 9, 10, 12],
    "mixolydian": [0, 2, 4, 5, 7, 9, 10, 12],
}

_NOTE_RE = re.compile(r"^([A-G]#?)(-?\d+)$")


def hz_to_midi(hz: float) -> float:
    if hz <= 0.0:
        return 0.0
    return A4_MIDI + 12.0 * float(np.log2(hz / A4_FREQUENCY))


def midi_to_hz(m: float) -> float:
    """Convert (fractional) MIDI pitch to frequency in Hz."""
    return A4_FREQUENCY * 2 ** ((float(m) - A4_MIDI) / 12.0)


def midi_to_note_name(midi: int) -> str:
    midi = int(round(midi))
    octave = midi // 12 - 1
    return f"{NOTE_NAMES[midi % 12]}{octave}"


def note_name_to_midi(name: str) -> int:
    match = _NOTE_RE.match(name.strip())
    if not match:
        raise ValueError(f"Invalid note name: {name}")
    note, octave = match.groups()
    return (int(octave) + 1) * 12 + NOTE_NAMES.index(note)


def frequency_to_note(hz: float) -> Dict[str, Any]:
    midi = hz_to_midi(hz)
    rounded = int(round(midi))
    return {
        "note_name": midi_to_note_name(rounded),
        "midi_note": rounded,
        "cents_off": (midi - rounded) * 100.0,
        "frequency": float(hz),
    }


def cents_difference(reference_hz: float, hz: float) -> float:
    """Signed distance from ``reference_hz`` to ``hz`` in cents."""
    if reference_hz <= 0.0 or hz <= 0.0:
        return float("inf")
    return 1200.0 * float(np.log2(hz / reference_hz))


def scale_degree_frequency(root_note: str, degree: int, scale: str = "major") -> float:
    intervals = SCALE_INTERVALS.get(scale, SCALE_INTERVALS["major"])
    return midi_to_hz(note_name_to_midi(root_note) + intervals[degree])
