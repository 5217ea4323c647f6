"""
penclick - Pen dosing table
Click-to-milligram conversion for the supported GLP-1 pens.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class PenModel:
    """One pen strength: how many clicks a full pen holds and mg per click"""
    label: str
    total_clicks: int
    mg_per_click: float


@dataclass(frozen=True)
class Medication:
    name: str
    pens: tuple
    doses: tuple                      # Preset target doses in mg


PEN_DATA = {
    'wegovy': Medication(
        name='Wegovy',
        pens=(
            PenModel('0.5mg (1.5mL)', total_clicks=148, mg_per_click=0.0134),
            PenModel('1.0mg (3mL)', total_clicks=74, mg_per_click=0.0135),
            PenModel('1.7mg (3mL)', total_clicks=75, mg_per_click=0.0227),
            PenModel('2.4mg (3mL)', total_clicks=75, mg_per_click=0.032),
        ),
        doses=(0.25, 0.5, 1.0, 1.7, 2.0, 2.4),
    ),
    'ozempic': Medication(
        name='Ozempic',
        pens=(
            PenModel('1mg (3mL)', total_clicks=72, mg_per_click=0.0139),
            PenModel('2mg (3mL)', total_clicks=74, mg_per_click=0.027),
        ),
        doses=(0.25, 0.5, 0.75, 1.0, 1.5, 2.0),
    ),
}


def get_medication(key: str) -> Medication:
    try:
        return PEN_DATA[str(key).lower()]
    except KeyError:
        raise ValueError(f"Unknown medication: {key!r} (expected one of {', '.join(PEN_DATA)})") from None


def get_pen(medication: str, pen_index: int) -> PenModel:
    pens = get_medication(medication).pens
    try:
        index = int(pen_index)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid pen index: {pen_index!r}") from None
    if not 0 <= index < len(pens):
        raise ValueError(f"Pen index {index} out of range for {medication} (0-{len(pens) - 1})")
    return pens[index]


def dose_for_clicks(clicks: int, pen: PenModel) -> float:
    return clicks * pen.mg_per_click


def target_clicks(target_dose: float, pen: PenModel) -> int:
    """Clicks needed to reach target_dose, rounded half up."""
    if target_dose <= 0:
        return 0
    return int(math.floor(target_dose / pen.mg_per_click + 0.5))


def dose_progress(clicks: int, target: int) -> float:
    """Percent of the target reached, capped at 100."""
    if target <= 0:
        return 0.0
    return min(clicks / target * 100.0, 100.0)
