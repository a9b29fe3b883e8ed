from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from fs_splits import (
    BestEffort,
    SplitMatrix,
    pace_to_string,
    record_columns,
    unit_label,
    unit_length_m,
)


BEST_COLOR = "black"
RECORD_COLOR = "tab:red"
ACTIVITY_COLOR = "tab:blue"

DISTANCE_TICKS = (1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 12, 15, 20, 25, 30, 50, 100)

_MATPLOTLIB_STYLE_READY = False


def _ensure_matplotlib_style(plt) -> None:
    global _MATPLOTLIB_STYLE_READY
    if not _MATPLOTLIB_STYLE_READY:
        try:
            plt.style.use("ggplot")
        except (OSError, ValueError):
            logging.debug("ggplot style unavailable; using matplotlib defaults")
        _MATPLOTLIB_STYLE_READY = True


def _setup_distance_axis(ax, distances: np.ndarray) -> None:
    ax.set_xscale("log")
    lo = float(np.min(distances))
    hi = float(np.max(distances))
    ticks = [t for t in DISTANCE_TICKS if lo <= t <= hi]
    if ticks:
        ax.set_xticks(ticks)
        ax.set_xticklabels([str(t) for t in ticks])
    ax.minorticks_off()


def plot_fastest_splits(
    split: SplitMatrix,
    paces: np.ndarray,
    efforts: Sequence[BestEffort],
    out_png: str,
    unit: str = "mile",
    title: str = "Fastest splits",
    show_activities: bool = True,
) -> None:
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
        from matplotlib.ticker import FuncFormatter
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("matplotlib is required for plotting. Install with: pip install matplotlib") from exc

    _ensure_matplotlib_style(plt)

    best = np.asarray(
        [e.pace_min if e.has_data else np.nan for e in efforts],
        dtype=np.float64,
    )
    if best.size == 0 or not np.any(np.isfinite(best)):
        logging.warning("No finite best-effort paces; skipping plot generation.")
        return

    distances = np.asarray(split.target_distances_m, dtype=np.float64) / unit_length_m(unit)
    label = unit_label(unit)

    fig, ax = plt.subplots(figsize=(12, 7))

    if show_activities:
        records = record_columns(paces, efforts)
        for col, activity_id in enumerate(split.activity_ids):
            column = np.asarray(paces[:, col], dtype=np.float64)
            finite = np.isfinite(column)
            if not np.any(finite):
                continue
            is_record = col in records
            ax.plot(
                distances[finite],
                column[finite],
                color=RECORD_COLOR if is_record else ACTIVITY_COLOR,
                alpha=0.5 if is_record else 0.25,
                linewidth=0.5 if is_record else 0.25,
            )

    # NaN gaps keep distances without data off the curve.
    ax.plot(distances, best, color=BEST_COLOR, linewidth=1.8, label="Fastest split")

    finite_best = best[np.isfinite(best)]
    lo = float(np.min(finite_best))
    hi = float(np.max(finite_best))
    margin = max((hi - lo) * 0.05, 0.1)
    ax.set_ylim(hi + margin, max(lo - margin, 0.0))

    _setup_distance_axis(ax, distances)
    ax.yaxis.set_major_formatter(FuncFormatter(lambda y, _pos: pace_to_string(y)))
    ax.set_xlabel(f"Distance ({label})")
    ax.set_ylabel(f"Pace (min/{label})")
    ax.set_title(title)
    ax.legend(loc="upper left")

    fig.tight_layout()
    fig.savefig(out_png, dpi=150)
    plt.close(fig)
