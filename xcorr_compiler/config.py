"""Correlator configuration: transform size, bank shape and peak convention."""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields
from enum import Enum


class ConfigError(ValueError):
    """Invalid correlator configuration. Raised eagerly, before any device work."""

    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class PeakMode(str, Enum):
    """What the correlation post-callback writes into each (signal, shift) slot.

    FIRST_POINTS: magnitudes of the first n_kg correlation lags, verbatim.
    RUNNING_MAX: point 0 holds the maximum magnitude over the search range,
        the remaining n_kg - 1 points stay zero.
    """

    FIRST_POINTS = "first_points"
    RUNNING_MAX = "running_max"


def is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


@dataclass(frozen=True)
class CorrelatorConfig:
    """Fixed-size batch correlator parameters."""
    fft_size: int = 32768
    num_shifts: int = 40
    num_signals: int = 50
    n_kg: int = 5
    scale_factor: float = 1.0 / 32768.0
    apply_window: bool = False
    peak_mode: PeakMode = PeakMode.FIRST_POINTS
    search_range: int | None = None

    def __post_init__(self):
        if not isinstance(self.peak_mode, PeakMode):
            try:
                object.__setattr__(self, "peak_mode", PeakMode(self.peak_mode))
            except ValueError:
                raise ConfigError(f"unknown peak_mode {self.peak_mode!r}") from None
        problems = self.validate()
        if problems:
            raise ConfigError(problems)

    def validate(self) -> list[str]:
        """Return every problem with this configuration (empty when valid)."""
        problems: list[str] = []
        for name in ("fft_size", "num_shifts", "num_signals", "n_kg"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                problems.append(f"{name} must be an integer, got {value!r}")
            elif value < 1:
                problems.append(f"{name} must be >= 1, got {value}")
        if problems:
            return problems

        if self.fft_size < 2 or not is_power_of_two(self.fft_size):
            problems.append(f"fft_size must be a power of two >= 2, got {self.fft_size}")
        if self.n_kg > self.fft_size:
            problems.append(f"n_kg ({self.n_kg}) must not exceed fft_size ({self.fft_size})")

        scale = self.scale_factor
        if not isinstance(scale, (int, float)) or isinstance(scale, bool):
            problems.append(f"scale_factor must be a number, got {scale!r}")
        elif not math.isfinite(scale) or scale <= 0:
            problems.append(f"scale_factor must be finite and > 0, got {scale}")

        if self.search_range is not None:
            if self.peak_mode is not PeakMode.RUNNING_MAX:
                problems.append("search_range only applies to peak_mode 'running_max'")
            elif not 1 <= self.search_range <= self.fft_size:
                problems.append(
                    f"search_range must be in [1, {self.fft_size}], got {self.search_range}"
                )
        return problems

    @property
    def effective_search_range(self) -> int:
        """Number of leading correlation lags the peak callback inspects."""
        if self.peak_mode is PeakMode.FIRST_POINTS:
            return self.n_kg
        return self.search_range or self.fft_size // 2

    @property
    def num_correlations(self) -> int:
        return self.num_signals * self.num_shifts

    # -----------------------------------------------------------------------
    # Serialization
    # -----------------------------------------------------------------------

    def to_dict(self) -> dict:
        d = asdict(self)
        d["peak_mode"] = self.peak_mode.value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> CorrelatorConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_json(cls, text: str) -> CorrelatorConfig:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid configuration JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError("configuration JSON must be an object")
        return cls.from_dict(data)


DEFAULT_CONFIG = CorrelatorConfig()
