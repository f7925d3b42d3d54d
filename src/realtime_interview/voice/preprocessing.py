"""Capture-side audio preprocessing.

Kept deliberately light: a high-pass filter for DC offset and rumble, then a
fast-attack / slow-release compressor to even out loudness. Anything heavier
adds latency before the recognizer sees the audio.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from realtime_interview.voice.audio_io import float32_to_pcm16, pcm16_to_float32


class BiquadHighPass:
    """Second-order high-pass filter (RBJ cookbook) with state kept across blocks."""

    def __init__(self, sample_rate: int, cutoff_hz: float = 80.0, q: float = 0.5) -> None:
        w0 = 2.0 * math.pi * cutoff_hz / sample_rate
        alpha = math.sin(w0) / (2.0 * q)
        cos_w0 = math.cos(w0)
        a0 = 1.0 + alpha

        self.b0 = ((1.0 + cos_w0) / 2.0) / a0
        self.b1 = -(1.0 + cos_w0) / a0
        self.b2 = ((1.0 + cos_w0) / 2.0) / a0
        self.a1 = (-2.0 * cos_w0) / a0
        self.a2 = (1.0 - alpha) / a0

        self._x1 = self._x2 = 0.0
        self._y1 = self._y2 = 0.0

    def reset(self) -> None:
        self._x1 = self._x2 = 0.0
        self._y1 = self._y2 = 0.0

    def process(self, block: np.ndarray) -> np.ndarray:
        out = np.empty(len(block), dtype=np.float32)
        b0, b1, b2, a1, a2 = self.b0, self.b1, self.b2, self.a1, self.a2
        x1, x2, y1, y2 = self._x1, self._x2, self._y1, self._y2
        for i, x in enumerate(block.tolist()):
            y = b0 * x + b1 * x1 + b2 * x2 - a1 * y1 - a2 * y2
            x2, x1 = x1, x
            y2, y1 = y1, y
            out[i] = y
        self._x1, self._x2, self._y1, self._y2 = x1, x2, y1, y2
        return out


@dataclass
class CompressorConfig:
    threshold_db: float = -24.0
    knee_db: float = 12.0
    ratio: float = 4.0
    attack_s: float = 0.001
    release_s: float = 0.050


class Compressor:
    """Soft-knee downward compressor with per-block envelope smoothing."""

    FLOOR_DB = -100.0

    def __init__(self, sample_rate: int, config: CompressorConfig | None = None) -> None:
        self.sample_rate = sample_rate
        self.config = config or CompressorConfig()
        self._envelope_db = self.FLOOR_DB

    @property
    def envelope_db(self) -> float:
        return self._envelope_db

    def gain_reduction_db(self, level_db: float) -> float:
        """Static curve: how many dB to take off a signal at `level_db` (<= 0)."""
        cfg = self.config
        over = level_db - cfg.threshold_db
        slope = 1.0 / cfg.ratio - 1.0
        if 2.0 * over < -cfg.knee_db:
            return 0.0
        if cfg.knee_db > 0 and 2.0 * abs(over) <= cfg.knee_db:
            return slope * (over + cfg.knee_db / 2.0) ** 2 / (2.0 * cfg.knee_db)
        return slope * over

    def process(self, block: np.ndarray) -> np.ndarray:
        if len(block) == 0:
            return block
        rms = float(np.sqrt(np.mean(np.square(block, dtype=np.float64))))
        level_db = 20.0 * math.log10(rms) if rms > 0 else self.FLOOR_DB

        duration = len(block) / self.sample_rate
        time_constant = self.config.attack_s if level_db > self._envelope_db else self.config.release_s
        coeff = math.exp(-duration / time_constant)
        self._envelope_db = coeff * self._envelope_db + (1.0 - coeff) * level_db

        gain = 10.0 ** (self.gain_reduction_db(self._envelope_db) / 20.0)
        return (block * gain).astype(np.float32)


class CapturePreprocessor:
    """High-pass then compress, one mic block at a time."""

    def __init__(
        self,
        sample_rate: int = 24000,
        highpass_hz: float = 80.0,
        highpass_q: float = 0.5,
        compressor: CompressorConfig | None = None,
    ) -> None:
        self.highpass = BiquadHighPass(sample_rate, highpass_hz, highpass_q)
        self.compressor = Compressor(sample_rate, compressor)

    def process(self, block: np.ndarray) -> np.ndarray:
        """Process one int16 block and return int16."""
        samples = pcm16_to_float32(block)
        samples = self.highpass.process(samples)
        samples = self.compressor.process(samples)
        return float32_to_pcm16(samples)
