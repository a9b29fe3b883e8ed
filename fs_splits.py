import logging
import math
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Sequence, Set, Tuple, Union

import numpy as np
from numba import njit


# -----------------
# Units and constants
# -----------------

METERS_PER_MILE = 1609.34
METERS_PER_KM = 1000.0

# Sentinel for "distance never covered": largest int64.
NOT_FOUND = int(np.iinfo(np.int64).max)

DEFAULT_SCALE_THRESHOLD = 0.01
DEFAULT_GRID_STEP_MILES = 0.5
DEFAULT_WORKERS = 0

RACE_DISTANCES: Tuple[Tuple[str, float], ...] = (
    ("400m", 400.0),
    ("1/2 mile", 804.0),
    ("1K", 1000.0),
    ("1 mile", 1609.0),
    ("2 mile", 3219.0),
    ("5K", 5000.0),
    ("5 Mile", 8045.0),
    ("10K", 10000.0),
    ("15K", 15000.0),
    ("10 mile", 16093.0),
    ("20K", 20000.0),
    ("Half-Marathon", 21097.0),
    ("30K", 30000.0),
    ("Marathon", 42195.0),
    ("50K", 50000.0),
)

NAMED_DISTANCES: Dict[str, float] = {
    "half": 21097.5,
    "halfmarathon": 21097.5,
    "half-marathon": 21097.5,
    "marathon": 42195.0,
}

_UNIT_LENGTHS: Dict[str, float] = {
    "mile": METERS_PER_MILE,
    "mi": METERS_PER_MILE,
    "km": METERS_PER_KM,
}


def meters_to_miles(x):
    return x / METERS_PER_MILE


def miles_to_meters(x):
    return x * METERS_PER_MILE


def unit_length_m(unit: str) -> float:
    key = (unit or "").strip().lower()
    if key not in _UNIT_LENGTHS:
        raise ValueError(f"Unknown distance unit '{unit}' (expected mile|km)")
    return _UNIT_LENGTHS[key]


def unit_label(unit: str) -> str:
    return "km" if unit_length_m(unit) == METERS_PER_KM else "mi"


def parse_distance_token(token: Union[str, float, int], *, default_unit: str = "m") -> Optional[float]:
    """Parse a distance such as ``400``, ``5k``, ``10km``, ``13.1mi`` or ``marathon`` into meters."""
    if isinstance(token, (int, float)):
        value = float(token)
        if not math.isfinite(value) or value <= 0:
            return None
        return value * _token_unit_factor(default_unit)
    s = str(token).strip().lower()
    if not s:
        return None
    if s in NAMED_DISTANCES:
        return NAMED_DISTANCES[s]
    unit = default_unit.lower()
    for suffix, name in (("km", "km"), ("mi", "mi"), ("k", "km"), ("m", "m")):
        if s.endswith(suffix):
            unit = name
            s = s[: -len(suffix)]
            break
    try:
        value = float(s)
    except ValueError:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value * _token_unit_factor(unit)


def _token_unit_factor(unit: str) -> float:
    unit = unit.lower()
    if unit == "m":
        return 1.0
    if unit in ("k", "km"):
        return METERS_PER_KM
    if unit in ("mi", "mile"):
        return METERS_PER_MILE
    raise ValueError(f"Unknown distance unit '{unit}'")


def parse_distance_list(tokens: Sequence[Union[str, float, int]], *, default_unit: str = "m") -> List[float]:
    distances: List[float] = []
    for tok in tokens:
        if tok is None:
            continue
        parts = [tok] if isinstance(tok, (int, float)) else str(tok).replace(",", " ").split()
        for part in parts:
            parsed = _safe_parse(part, default_unit)
            if parsed is None:
                logging.debug("Ignoring distance token %r", part)
                continue
            distances.append(parsed)
    unique_sorted = sorted({round(d, 6) for d in distances})
    return [float(d) for d in unique_sorted]


def _safe_parse(token: Union[str, float, int], default_unit: str) -> Optional[float]:
    try:
        return parse_distance_token(token, default_unit=default_unit)
    except ValueError:
        return None


# -----------------
# Data structures
# -----------------

class InvalidInputError(ValueError):
    """Raised when stream or buffer lengths violate the engine contract."""


@dataclass
class ActivityStream:
    activity_id: Any
    time: Optional[Sequence[int]]
    distance: Optional[Sequence[float]]
    reported_total_distance: float
    name: Optional[str] = None
    start_date_local: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScaleCorrection:
    distance: np.ndarray
    scale: float
    applied: bool
    skipped: bool = False


@dataclass
class SplitMatrix:
    target_distances_m: np.ndarray
    activity_ids: List[Any]
    times_s: np.ndarray
    no_data: List[Any] = field(default_factory=list)
    invalid: Dict[Any, str] = field(default_factory=dict)
    scaled: List[Any] = field(default_factory=list)
    scale_skipped: List[Any] = field(default_factory=list)

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.times_s.shape[0]), int(self.times_s.shape[1]))

    def column_of(self, activity_id: Any) -> int:
        return self.activity_ids.index(activity_id)

    def split_time(self, target_index: int, activity_id: Any) -> Optional[int]:
        value = int(self.times_s[target_index, self.column_of(activity_id)])
        return None if value == NOT_FOUND else value


@dataclass
class BestEffort:
    distance_m: Optional[float] = None
    pace_min: Optional[float] = None
    activity_id: Optional[Any] = None
    column: Optional[int] = None
    time_s: Optional[int] = None

    @property
    def has_data(self) -> bool:
        return self.pace_min is not None


@dataclass
class LeaderboardRow:
    name: str
    distance_m: float
    effort: BestEffort


class _StageProfiler:
    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._last = time.perf_counter()

    def lap(self, label: str) -> None:
        if not self.enabled:
            return
        now = time.perf_counter()
        logging.info("Profile %-18s %.3fs", label, now - self._last)
        self._last = now


# -----------------
# Fastest-split engine
# -----------------

EngineMode = Literal["auto", "python", "numba"]


def _resolve_engine(engine: str) -> EngineMode:
    normalized = engine.strip().lower() if engine else "auto"
    if normalized not in {"auto", "python", "numba"}:
        logging.warning("Unknown engine '%s'; falling back to auto", engine)
        return "auto"
    return normalized  # type: ignore[return-value]


def sliding_window_split(
    time_s: Sequence[int],
    distance_m: Sequence[float],
    target_m: float,
) -> Tuple[int, int]:
    """Fastest time covering ``target_m`` in one activity.

    Two pointers walk the same non-decreasing distance series: the end
    pointer grows the window until the target is covered, then the start
    pointer shrinks it looking for a shorter qualifying window. Neither
    pointer moves backwards, so the walk is linear in ``len(time_s)``.

    Returns ``(fastest, advances)`` where ``fastest`` is ``NOT_FOUND`` when
    no window qualifies and ``advances`` counts pointer moves.
    """
    n = len(time_s)
    if n == 0 or not target_m > 0.0:
        return NOT_FOUND, 0

    i = 0
    j = 0
    advances = 0
    fastest = NOT_FOUND
    while j < n:
        if distance_m[j] - distance_m[i] >= target_m:
            split = time_s[j] - time_s[i]
            if split < fastest:
                fastest = split
            i += 1
            advances += 1
            if i > j:
                j = i
                advances += 1
        else:
            j += 1
            advances += 1
    return int(fastest), advances


@njit(cache=True, nogil=True)
def _numba_fastest_split_kernel(
    dest: np.ndarray,
    time_s: np.ndarray,
    distance_m: np.ndarray,
    targets: np.ndarray,
) -> None:
    n = time_s.shape[0]
    m = targets.shape[0]
    for k in range(m):
        target = targets[k]
        if n == 0 or not target > 0.0:
            dest[k] = NOT_FOUND
            continue
        i = 0
        j = 0
        fastest = NOT_FOUND
        while j < n:
            if distance_m[j] - distance_m[i] >= target:
                split = time_s[j] - time_s[i]
                if split < fastest:
                    fastest = split
                i += 1
                if i > j:
                    j = i
            else:
                j += 1
        dest[k] = fastest


def fastest_split_into(
    dest,
    time_s: Sequence[int],
    distance_m: Sequence[float],
    target_distances: Sequence[float],
    engine: str = "auto",
) -> None:
    """Write the fastest split (seconds) for every target distance into ``dest``.

    ``dest[k]`` receives ``NOT_FOUND`` when ``target_distances[k]`` is never
    covered, is not positive, or the streams are empty. ``distance_m`` must be
    non-decreasing; callers own that guarantee (see ``clamp_monotonic``).
    """
    try:
        t_arr = np.asarray(time_s, dtype=np.int64)
        d_arr = np.asarray(distance_m, dtype=np.float64)
    except (OverflowError, TypeError, ValueError) as exc:
        raise InvalidInputError(f"stream samples cannot be converted: {exc}") from exc
    targets = np.asarray(target_distances, dtype=np.float64).reshape(-1)
    if t_arr.ndim != 1 or d_arr.ndim != 1:
        raise InvalidInputError("time and distance streams must be one-dimensional")
    if t_arr.shape != d_arr.shape:
        raise InvalidInputError(
            f"time and distance streams differ in length ({t_arr.size} != {d_arr.size})"
        )
    if len(dest) != targets.size:
        raise InvalidInputError(
            f"output buffer length {len(dest)} does not match {targets.size} target distances"
        )

    resolved = _resolve_engine(engine)
    if resolved == "python":
        t_list = t_arr.tolist()
        d_list = d_arr.tolist()
        for k, target in enumerate(targets.tolist()):
            dest[k] = sliding_window_split(t_list, d_list, target)[0]
        return None

    t_arr = np.ascontiguousarray(t_arr)
    d_arr = np.ascontiguousarray(d_arr)
    targets = np.ascontiguousarray(targets)
    if isinstance(dest, np.ndarray) and dest.dtype == np.int64 and dest.ndim == 1:
        _numba_fastest_split_kernel(dest, t_arr, d_arr, targets)
    else:
        buf = np.empty(targets.size, dtype=np.int64)
        _numba_fastest_split_kernel(buf, t_arr, d_arr, targets)
        dest[:] = buf.tolist()
    return None


def fastest_splits(
    time_s: Sequence[int],
    distance_m: Sequence[float],
    target_distances: Sequence[float],
    engine: str = "auto",
) -> np.ndarray:
    targets = np.asarray(target_distances, dtype=np.float64).reshape(-1)
    out = np.full(targets.size, NOT_FOUND, dtype=np.int64)
    fastest_split_into(out, time_s, distance_m, targets, engine=engine)
    return out


# -----------------
# Distance-scale correction
# -----------------

def correct_distance_scale(
    distance_m: Sequence[float],
    reported_total_distance: float,
    threshold: float = DEFAULT_SCALE_THRESHOLD,
) -> ScaleCorrection:
    """Rescale a cumulative distance stream so it ends at the reported total.

    The stream is only rescaled when the deviation exceeds ``threshold``; the
    input is never modified, the returned ``distance`` is always a new array.
    """
    if threshold < 0 or not math.isfinite(threshold):
        raise ValueError(f"scale threshold must be a non-negative number, got {threshold}")
    d_arr = np.array(distance_m, dtype=np.float64)
    if d_arr.size == 0:
        logging.debug("Scale correction skipped: empty distance stream")
        return ScaleCorrection(distance=d_arr, scale=math.nan, applied=False, skipped=True)

    last = float(d_arr[-1])
    try:
        reported = float(reported_total_distance)
    except (TypeError, ValueError):
        reported = math.nan
    if not (math.isfinite(reported) and reported > 0.0 and math.isfinite(last) and last > 0.0):
        logging.debug(
            "Scale correction skipped: reported=%s final sample=%s", reported_total_distance, last
        )
        return ScaleCorrection(distance=d_arr, scale=math.nan, applied=False, skipped=True)

    scale = reported / last
    if abs(scale - 1.0) > threshold:
        d_arr *= scale
        return ScaleCorrection(distance=d_arr, scale=scale, applied=True)
    return ScaleCorrection(distance=d_arr, scale=scale, applied=False)


def clamp_monotonic(distance_m: Sequence[float]) -> np.ndarray:
    d_arr = np.asarray(distance_m, dtype=np.float64)
    if d_arr.size == 0:
        return d_arr.copy()
    return np.maximum.accumulate(d_arr)


# -----------------
# Target distances
# -----------------

def _floor_to_factor(x: float, factor: float) -> float:
    return math.floor(x / factor) * factor


def build_target_distances(
    race_distances_m: Optional[Sequence[float]],
    max_distance_m: float,
    grid_step_miles: float = DEFAULT_GRID_STEP_MILES,
) -> np.ndarray:
    """Race distances plus a regular mile grid, capped at ``max_distance_m``.

    Entries are keyed by their length in miles rounded to 1e-6; race
    distances win over grid points that collide with them.
    """
    if not grid_step_miles > 0:
        raise ValueError(f"grid step must be positive, got {grid_step_miles}")
    if race_distances_m is None:
        race_distances_m = [meters for _, meters in RACE_DISTANCES]
    max_miles = meters_to_miles(float(max_distance_m)) if math.isfinite(max_distance_m) else 0.0

    by_key: Dict[float, float] = {}
    for meters in race_distances_m:
        meters = float(meters)
        if not math.isfinite(meters) or meters <= 0:
            continue
        miles = meters_to_miles(meters)
        if miles > max_miles:
            continue
        by_key.setdefault(round(miles, 6), meters)

    upper = _floor_to_factor(max_miles, grid_step_miles)
    if upper >= 1.0:
        count = int(math.floor((upper - 1.0) / grid_step_miles + 1e-9)) + 1
        for idx in range(count):
            miles = 1.0 + idx * grid_step_miles
            by_key.setdefault(round(miles, 6), miles_to_meters(miles))

    return np.asarray([by_key[key] for key in sorted(by_key)], dtype=np.float64)


# -----------------
# Batch evaluation
# -----------------

class _ColumnOutcome(NamedTuple):
    status: str
    scaled: bool
    scale_skipped: bool


def _evaluate_column(
    dest: np.ndarray,
    activity: ActivityStream,
    targets: np.ndarray,
    engine: str,
    scale_threshold: float,
    clamp: bool,
) -> _ColumnOutcome:
    if activity.time is None or activity.distance is None:
        return _ColumnOutcome("no_data", False, True)
    n_time = len(activity.time)
    n_dist = len(activity.distance)
    if n_time != n_dist:
        raise InvalidInputError(f"time and distance streams differ in length ({n_time} != {n_dist})")
    if n_time == 0:
        return _ColumnOutcome("no_data", False, True)

    try:
        time_s = np.asarray(activity.time, dtype=np.int64)
        distance_m = np.asarray(activity.distance, dtype=np.float64)
    except (OverflowError, TypeError, ValueError) as exc:
        raise InvalidInputError(f"stream samples cannot be converted: {exc}") from exc
    # null samples come through as NaN
    if not np.all(np.isfinite(distance_m)):
        raise InvalidInputError("distance stream contains missing or non-finite samples")

    correction = correct_distance_scale(distance_m, activity.reported_total_distance, scale_threshold)
    distance = correction.distance
    if clamp:
        distance = clamp_monotonic(distance)
    fastest_split_into(dest, time_s, distance, targets, engine=engine)
    return _ColumnOutcome("ok", correction.applied, correction.skipped)


def _resolve_workers(workers: int, n_tasks: int) -> int:
    if workers and workers > 0:
        return max(1, min(workers, n_tasks))
    return max(1, min(n_tasks, os.cpu_count() or 1))


def _preview_ids(ids: Sequence[Any], limit: int = 5) -> str:
    preview = ", ".join(str(i) for i in ids[:limit])
    if len(ids) > limit:
        preview += ", ..."
    return preview


def evaluate_activities(
    activities: Sequence[ActivityStream],
    target_distances: Sequence[float],
    *,
    workers: int = DEFAULT_WORKERS,
    engine: str = "auto",
    scale_threshold: float = DEFAULT_SCALE_THRESHOLD,
    clamp: bool = True,
    drop_missing: bool = False,
) -> SplitMatrix:
    """Fastest splits for every (target distance, activity) pair.

    Each activity is scale-corrected on a private copy and evaluated into its
    own column, so activities can run concurrently on a thread pool. Activities
    without usable streams keep an all-``NOT_FOUND`` column (or are dropped with
    ``drop_missing``) and are listed in ``no_data``/``invalid``.
    """
    targets = np.ascontiguousarray(np.asarray(target_distances, dtype=np.float64).reshape(-1))
    activity_list = list(activities)
    ids = [act.activity_id for act in activity_list]
    times = np.full((targets.size, len(activity_list)), NOT_FOUND, dtype=np.int64, order="F")

    resolved = _resolve_engine(engine)
    max_workers = _resolve_workers(workers, len(activity_list))
    logging.info(
        "Evaluating %d activit%s x %d target distance(s) (engine=%s, workers=%d)",
        len(activity_list),
        "y" if len(activity_list) == 1 else "ies",
        targets.size,
        resolved,
        max_workers,
    )

    outcomes: List[Optional[_ColumnOutcome]] = [None] * len(activity_list)
    invalid: Dict[Any, str] = {}

    def _record_failure(col: int, exc: Exception) -> None:
        times[:, col] = NOT_FOUND
        invalid[ids[col]] = str(exc)
        logging.debug("Activity %s rejected: %s", ids[col], exc)

    if max_workers == 1 or len(activity_list) <= 1:
        for col, act in enumerate(activity_list):
            try:
                outcomes[col] = _evaluate_column(times[:, col], act, targets, resolved, scale_threshold, clamp)
            except (TypeError, ValueError) as exc:
                _record_failure(col, exc)
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_map = {}
            for col, act in enumerate(activity_list):
                future = executor.submit(
                    _evaluate_column, times[:, col], act, targets, resolved, scale_threshold, clamp
                )
                future_map[future] = col
            for future in as_completed(future_map):
                col = future_map[future]
                try:
                    outcomes[col] = future.result()
                except (TypeError, ValueError) as exc:
                    _record_failure(col, exc)

    no_data = [ids[col] for col, out in enumerate(outcomes) if out is not None and out.status == "no_data"]
    scaled = [ids[col] for col, out in enumerate(outcomes) if out is not None and out.scaled]
    scale_skipped = [ids[col] for col, out in enumerate(outcomes) if out is not None and out.scale_skipped]

    if no_data:
        logging.warning("%d activit%s without stream data: %s", len(no_data), "y" if len(no_data) == 1 else "ies", _preview_ids(no_data))
    if invalid:
        logging.warning("%d activit%s with malformed streams: %s", len(invalid), "y" if len(invalid) == 1 else "ies", _preview_ids(list(invalid)))
    if scaled:
        logging.info("Rescaled distance streams of %d activit%s", len(scaled), "y" if len(scaled) == 1 else "ies")

    if drop_missing:
        keep = [col for col, out in enumerate(outcomes) if out is not None and out.status == "ok"]
        times = np.asfortranarray(times[:, keep])
        ids = [ids[col] for col in keep]

    times.setflags(write=False)
    return SplitMatrix(
        target_distances_m=targets,
        activity_ids=ids,
        times_s=times,
        no_data=no_data,
        invalid=invalid,
        scaled=scaled,
        scale_skipped=scale_skipped,
    )


# -----------------
# Paces and best efforts
# -----------------

def pace_matrix(times_s, target_distances_m: Sequence[float], unit: str = "mile") -> np.ndarray:
    """Minutes per ``unit`` for each split; ``NOT_FOUND`` becomes ``inf``."""
    times = np.asarray(times_s, dtype=np.int64)
    if times.ndim == 1:
        times = times.reshape(-1, 1)
    dist_units = np.asarray(target_distances_m, dtype=np.float64).reshape(-1) / unit_length_m(unit)
    if times.shape[0] != dist_units.size:
        raise InvalidInputError(
            f"split matrix has {times.shape[0]} rows but {dist_units.size} target distances were given"
        )
    missing = times == NOT_FOUND
    with np.errstate(divide="ignore", invalid="ignore"):
        paces = (times.astype(np.float64) / 60.0) / dist_units[:, None]
    paces[missing] = np.inf
    paces[~np.isfinite(paces)] = np.inf
    return paces


def reduce_best_efforts(
    paces,
    activity_ids: Sequence[Any],
    distances_m: Optional[Sequence[float]] = None,
    times_s=None,
) -> List[BestEffort]:
    """Fastest pace per row and the activity that set it.

    Non-finite paces are missing. Rows with no finite pace yield an effort
    without pace or activity. Ties go to the first column.
    """
    p = np.asarray(paces, dtype=np.float64)
    if p.ndim != 2:
        raise InvalidInputError("pace matrix must be two-dimensional")
    if p.shape[1] != len(activity_ids):
        raise InvalidInputError(
            f"pace matrix has {p.shape[1]} columns but {len(activity_ids)} activity ids were given"
        )
    if distances_m is not None and len(distances_m) != p.shape[0]:
        raise InvalidInputError("distances do not match pace matrix rows")
    times = np.asarray(times_s, dtype=np.int64) if times_s is not None else None

    finite = np.isfinite(p)
    masked = np.where(finite, p, np.inf)
    efforts: List[BestEffort] = []
    for row in range(p.shape[0]):
        dist = float(distances_m[row]) if distances_m is not None else None
        if not finite[row].any():
            efforts.append(BestEffort(distance_m=dist))
            continue
        col = int(np.argmin(masked[row]))
        split_time: Optional[int] = None
        if times is not None:
            value = int(times[row, col])
            split_time = None if value == NOT_FOUND else value
        efforts.append(
            BestEffort(
                distance_m=dist,
                pace_min=float(masked[row, col]),
                activity_id=activity_ids[col],
                column=col,
                time_s=split_time,
            )
        )
    return efforts


def best_effort_curve(split: SplitMatrix, unit: str = "mile") -> Tuple[np.ndarray, List[BestEffort]]:
    paces = pace_matrix(split.times_s, split.target_distances_m, unit=unit)
    efforts = reduce_best_efforts(paces, split.activity_ids, split.target_distances_m, split.times_s)
    return paces, efforts


def record_columns(paces, efforts: Sequence[BestEffort]) -> Set[int]:
    """Columns that match the best pace of at least one row."""
    p = np.asarray(paces, dtype=np.float64)
    cols: Set[int] = set()
    for row, effort in enumerate(efforts):
        if not effort.has_data:
            continue
        cols.update(int(c) for c in np.flatnonzero(p[row] == effort.pace_min))
    return cols


def leaderboard(
    split: SplitMatrix,
    efforts: Sequence[BestEffort],
    race_distances: Sequence[Tuple[str, float]] = RACE_DISTANCES,
) -> List[LeaderboardRow]:
    targets = np.asarray(split.target_distances_m, dtype=np.float64)
    rows: List[LeaderboardRow] = []
    for name, meters in race_distances:
        matches = np.flatnonzero(np.isclose(targets, float(meters), rtol=0.0, atol=1e-6))
        if matches.size == 0:
            continue
        rows.append(LeaderboardRow(name=name, distance_m=float(meters), effort=efforts[int(matches[0])]))
    return rows


# -----------------
# Formatting
# -----------------

def pace_to_string(minutes: float) -> str:
    """Render minutes as ``M:SS`` or, from an hour up, ``H:MM:SS``."""
    try:
        value = float(minutes)
    except (TypeError, ValueError):
        return "N/A"
    if not math.isfinite(value) or value < 0:
        return "N/A"
    hrs = int(math.floor(value / 60.0))
    mins = int(math.floor(value % 60.0))
    secs = int(round((value - hrs * 60 - mins) * 60.0))
    if secs >= 60:
        secs -= 60
        mins += 1
    if mins >= 60:
        mins -= 60
        hrs += 1
    if hrs > 0:
        return f"{hrs:d}:{mins:02d}:{secs:02d}"
    return f"{mins:d}:{secs:02d}"


def pace_to_strings(values: Sequence[float]) -> List[str]:
    return [pace_to_string(v) for v in values]


def split_time_to_string(seconds: Optional[int]) -> str:
    if seconds is None or seconds == NOT_FOUND:
        return "N/A"
    return pace_to_string(seconds / 60.0)
