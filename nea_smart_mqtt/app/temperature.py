from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Temperature:
    celsius: float | None
    fahrenheit: float | None
    raw: int | None  # Fahrenheit x 10, as sent by the cloud

    @property
    def known(self) -> bool:
        return self.celsius is not None


UNKNOWN = Temperature(celsius=None, fahrenheit=None, raw=None)


def decode_temperature(value: Any) -> Temperature:
    """Decode a raw Fahrenheit x10 reading.

    Booleans and non-numeric values decode to ``UNKNOWN`` rather than raising.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return UNKNOWN
    if value != value:  # NaN
        return UNKNOWN
    fahrenheit = value / 10
    celsius = (fahrenheit - 32) * 5 / 9
    return Temperature(
        celsius=round(celsius, 1),
        fahrenheit=round(fahrenheit, 1),
        raw=int(value),
    )


def celsius_to_raw(celsius: float) -> int:
    return int(round((float(celsius) * 9 / 5 + 32) * 10))


def celsius_to_fahrenheit(celsius: float) -> float:
    return round(float(celsius) * 9 / 5 + 32, 1)
