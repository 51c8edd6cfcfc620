"""Dataset type catalogue and label classification helpers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class DatasetType(str, Enum):
    """Screening categories a reference dataset can calibrate."""

    DYSLEXIA = "dyslexia"
    ADHD = "adhd"
    DYSGRAPHIA = "dysgraphia"


DEFAULT_DATASET_METRICS: Dict[DatasetType, List[str]] = {
    DatasetType.DYSLEXIA: [
        "fixation_duration_avg",
        "regression_rate",
        "saccade_amplitude",
        "chaos_index",
        "reading_speed_wpm",
        "prolonged_fixation_rate",
        "fixation_count",
        "fic_score",
    ],
    DatasetType.ADHD: [
        "chaos_index",
        "attention_lapses",
        "saccade_variability",
        "fixation_duration_avg",
        "off_task_glances",
        "reading_speed_wpm",
    ],
    DatasetType.DYSGRAPHIA: [
        "letter_reversal_count",
        "letter_crowding",
        "graphic_inconsistency",
        "line_adherence",
        "stroke_pressure_variability",
        "writing_speed",
    ],
}

POSITIVE_LABELS = frozenset({"dyslexic", "positive", "yes", "1", "true", "adhd", "dysgraphia", "d"})


def parse_dataset_type(value: Any) -> Optional[DatasetType]:
    """Return the matching DatasetType, or None for anything outside the closed set."""
    text = str(value or "").strip().lower()
    try:
        return DatasetType(text)
    except ValueError:
        return None


def label_text(value: Any) -> str:
    """Render a parsed cell as text; integral floats lose their trailing '.0'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_positive_label(label: Any) -> bool:
    # Clinician exports label positives as e.g. "dyslexic", "D", "1" or "yes".
    lower = label_text(label).strip().lower()
    return lower in POSITIVE_LABELS or lower.startswith("d")
