"""
Progress estimation for installers that report no usable progress.

Pure functions only: the caller feeds samples (elapsed time, an output line,
or a download byte fraction) together with the last reported value, and gets
back a new value that is never lower and never reaches 100. Only a terminal
Installed event reports 100.
"""

import math
import re
from typing import Optional, Sequence, Tuple

from provisioner.models.provisioning import DependencyKind, ProgressSample

CEILING = 95

# Downloads map their byte fraction into [0, DOWNLOAD_BAND)
DOWNLOAD_BAND = 60

# (lower-cased token, phase floor); checked against lower-cased output lines
DEFAULT_MILESTONES: Tuple[Tuple[str, int], ...] = (
    ("download:start", 10),
    ("downloading", 10),
    ("collecting", 10),
    ("extracting", 50),
    ("unpacking", 50),
    ("installing", 60),
    ("successfully installed", 90),
)

# Helper scripts may print explicit percentages
PROGRESS_LINE = re.compile(r"^\s*PROGRESS:\s*(\d{1,3})\b")


def expected_duration_for(kind: DependencyKind, settings) -> float:
    """Typical wall-clock seconds for an install of `kind`."""
    return {
        DependencyKind.INTERPRETER: settings.EXPECTED_DURATION_INTERPRETER_SECONDS,
        DependencyKind.PACKAGE: settings.EXPECTED_DURATION_PACKAGE_SECONDS,
        DependencyKind.MODEL: settings.EXPECTED_DURATION_MODEL_SECONDS,
    }[kind]


def time_based_progress(elapsed: float, expected_duration: float, ceiling: int = CEILING) -> int:
    if expected_duration <= 0:
        return ceiling
    return min(ceiling, math.floor(100 * max(elapsed, 0.0) / expected_duration))


def milestone_floor(
    line: Optional[str],
    milestones: Sequence[Tuple[str, int]] = DEFAULT_MILESTONES,
    ceiling: int = CEILING,
) -> int:
    """Phase floor implied by one output line (0 when the line carries no signal)."""
    if not line:
        return 0

    explicit = PROGRESS_LINE.match(line)
    if explicit:
        return min(int(explicit.group(1)), ceiling)

    lowered = line.lower()
    floor = 0
    for token, value in milestones:
        # Word start only: "uninstalling" is not an install milestone
        if re.search(r"\b" + re.escape(token), lowered):
            floor = max(floor, value)
    return min(floor, ceiling)


def download_progress(fraction: Optional[float]) -> int:
    if fraction is None:
        return 0
    fraction = min(max(fraction, 0.0), 1.0)
    # Strictly below the band edge: 60 belongs to the install phase
    return min(math.floor(fraction * DOWNLOAD_BAND), DOWNLOAD_BAND - 1)


def estimate_progress(
    sample: ProgressSample,
    previous: int,
    expected_duration: float,
    milestones: Sequence[Tuple[str, int]] = DEFAULT_MILESTONES,
    ceiling: int = CEILING,
) -> int:
    """
    Next progress value for a running install.

    Args:
        sample: Elapsed seconds plus an optional output line or byte fraction
        previous: Last value reported for this session
        expected_duration: Typical duration for this kind of install
        milestones: Token floors, e.g. ("extracting", 50)
        ceiling: Upper bound for non-terminal values

    Returns:
        max(previous, candidate) where candidate never exceeds `ceiling`
    """
    candidate = max(
        time_based_progress(sample.elapsed, expected_duration, ceiling),
        milestone_floor(sample.line, milestones, ceiling),
        download_progress(sample.fraction),
    )
    return max(previous, min(candidate, ceiling))
