from __future__ import annotations

# CLI orchestration for fastsplit. The split engine and reductions live in
# fs_splits, the local Strava export reader in fs_source and matplotlib
# rendering in fs_plotting.

import csv
import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import typer

from fs_plotting import plot_fastest_splits
from fs_source import (
    DATA_DIR,
    LocalActivitySource,
    activity_table,
    filter_activities,
    load_activity_streams,
)
from fs_splits import (
    DEFAULT_GRID_STEP_MILES,
    DEFAULT_SCALE_THRESHOLD,
    DEFAULT_WORKERS,
    RACE_DISTANCES,
    BestEffort,
    LeaderboardRow,
    SplitMatrix,
    _StageProfiler,
    _resolve_engine,
    best_effort_curve,
    build_target_distances,
    evaluate_activities,
    leaderboard,
    pace_to_string,
    parse_distance_list,
    split_time_to_string,
    unit_label,
    unit_length_m,
)


ACTIVITY_URL_TMPL = "https://www.strava.com/activities/{id}"


def _setup_logging(verbose: bool, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)
    # Suppress very chatty third-party DEBUG logs (e.g., matplotlib findfont, numba compiler)
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("matplotlib.font_manager").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.INFO)
    logging.getLogger("numba").setLevel(logging.WARNING)


def _load_distance_tokens_from_file(path_str: str) -> List[str]:
    path = Path(path_str).expanduser()
    data = path.read_text(encoding="utf-8")
    tokens: List[str] = []
    for line in data.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        tokens.extend(stripped.replace(",", " ").split())
    return tokens


def _race_distances_from_options(
    race_distances: Optional[str],
    race_file: Optional[str],
) -> List[Any]:
    """Named leaderboard rows plus any extra distances given on the command line."""
    tokens: List[str] = []
    if race_distances:
        tokens.extend(race_distances.replace(",", " ").split())
    if race_file:
        tokens.extend(_load_distance_tokens_from_file(race_file))
    named = list(RACE_DISTANCES)
    if not tokens:
        return named
    known = {round(m, 6) for _, m in named}
    for meters in parse_distance_list(tokens):
        if round(meters, 6) in known:
            continue
        named.append((_distance_label(meters), meters))
    named.sort(key=lambda item: item[1])
    return named


def _distance_label(meters: float) -> str:
    if meters >= 1000.0 and abs(meters / 1000.0 - round(meters / 1000.0)) < 1e-9:
        return f"{int(round(meters / 1000.0))}K"
    return f"{meters:g}m"


def _format_leaderboard_line(row: LeaderboardRow, unit: str, activities: Dict[Any, Any]) -> str:
    effort = row.effort
    if not effort.has_data:
        return f"{row.name:<13s} | No valid pace found."
    act = activities.get(effort.activity_id)
    name = getattr(act, "name", None) or "Unknown"
    date = getattr(act, "start_date_local", None) or "?"
    return "%-13s | %7s | %5s min/%s | %s | %s %s" % (
        row.name,
        split_time_to_string(effort.time_s),
        pace_to_string(effort.pace_min),
        unit_label(unit),
        date,
        name,
        ACTIVITY_URL_TMPL.format(id=effort.activity_id),
    )


def _write_best_effort_csv(
    output: str,
    efforts: Sequence[BestEffort],
    unit: str,
    activities: Dict[Any, Any],
) -> None:
    label = unit_label(unit)
    length = unit_length_m(unit)
    fieldnames = [
        "distance_m",
        f"distance_{label}",
        "time_s",
        "time",
        f"pace_min_per_{label}",
        "pace",
        "activity_id",
        "activity_name",
        "start_date_local",
        "note",
    ]
    with open(output, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(fieldnames)
        for effort in efforts:
            distance_m = effort.distance_m if effort.distance_m is not None else math.nan
            act = activities.get(effort.activity_id) if effort.has_data else None
            writer.writerow([
                round(distance_m, 3),
                round(distance_m / length, 6),
                effort.time_s if effort.time_s is not None else None,
                split_time_to_string(effort.time_s) if effort.has_data else None,
                round(effort.pace_min, 6) if effort.has_data else None,
                pace_to_string(effort.pace_min) if effort.has_data else None,
                effort.activity_id,
                getattr(act, "name", None),
                getattr(act, "start_date_local", None),
                "" if effort.has_data else "no_data",
            ])


def _write_json_sidecar(
    output: str,
    meta: Dict[str, Any],
    split: SplitMatrix,
    efforts: Sequence[BestEffort],
) -> None:
    json_path = output[:-4] + ".json" if output.lower().endswith(".csv") else output + ".json"
    data = {
        "best_efforts": [e.__dict__ for e in efforts],
        "no_data": list(split.no_data),
        "invalid": {str(k): v for k, v in split.invalid.items()},
        "scaled": list(split.scaled),
        "scale_skipped": list(split.scale_skipped),
    }
    try:
        with open(json_path, "w", encoding="utf-8") as jf:
            json.dump({"meta": meta, "splits": data}, jf, indent=2, default=str)
        logging.info("Wrote JSON: %s", json_path)
    except OSError as exc:
        logging.warning("Failed to write JSON sidecar: %s", exc)


def _run_splits(
    data_dir: Optional[str],
    output: str,
    race_distances: Optional[str] = None,
    race_file: Optional[str] = None,
    grid_step: float = DEFAULT_GRID_STEP_MILES,
    unit: str = "mile",
    scale_threshold: float = DEFAULT_SCALE_THRESHOLD,
    clamp: bool = True,
    workers: int = DEFAULT_WORKERS,
    engine: str = "auto",
    sport: str = "run",
    include_private: bool = False,
    include_manual: bool = False,
    drop_missing: bool = False,
    png: Optional[str] = None,
    no_plot: bool = False,
    json_sidecar: bool = False,
    verbose: bool = False,
    log_file: Optional[str] = None,
    profile: bool = False,
    echo=print,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    profiler = _StageProfiler(profile)
    engine_mode = _resolve_engine(engine)

    try:
        unit_length_m(unit)
        named = _race_distances_from_options(race_distances, race_file)
        source = LocalActivitySource(data_dir)
        summaries = filter_activities(
            source.list_activities(),
            sport=sport,
            include_private=include_private,
            include_manual=include_manual,
        )
        activities = load_activity_streams(source, summaries)
    except (OSError, RuntimeError, ValueError) as exc:
        logging.error(str(exc))
        return 2
    profiler.lap("load")

    if not activities:
        logging.error("No activities selected; nothing to compute.")
        return 3

    reported = [a.reported_total_distance for a in activities if math.isfinite(a.reported_total_distance)]
    max_distance_m = max(reported) if reported else 0.0
    try:
        targets = build_target_distances([m for _, m in named], max_distance_m, grid_step_miles=grid_step)
    except ValueError as exc:
        logging.error(str(exc))
        return 2
    if targets.size == 0:
        logging.error("No target distances up to %.0f m; nothing to compute.", max_distance_m)
        return 3
    logging.info("Target distances: %d (up to %.0f m)", targets.size, float(targets[-1]))

    try:
        split = evaluate_activities(
            activities,
            targets,
            workers=workers,
            engine=engine_mode,
            scale_threshold=scale_threshold,
            clamp=clamp,
            drop_missing=drop_missing,
        )
    except (OverflowError, ValueError) as exc:
        logging.error(str(exc))
        return 2
    profiler.lap("splits")

    paces, efforts = best_effort_curve(split, unit=unit)
    by_id = {s.id: s for s in summaries}
    rows = leaderboard(split, efforts, named)
    for row in rows:
        echo(_format_leaderboard_line(row, unit, by_id))
    missing_rows = sum(1 for e in efforts if not e.has_data)
    if missing_rows:
        logging.info("%d target distance(s) without any valid split", missing_rows)

    try:
        _write_best_effort_csv(output, efforts, unit, by_id)
    except OSError as exc:
        logging.error(f"Failed to write {output}: {exc}")
        return 2
    logging.info("Wrote: %s", output)
    profiler.lap("csv")

    if json_sidecar:
        meta = {
            "command": "splits",
            "data_dir": str(source.data_dir),
            "output_csv": output,
            "n_activities": len(split.activity_ids),
            "n_targets": int(targets.size),
            "engine": engine_mode,
            "params": {
                "grid_step_miles": grid_step,
                "unit": unit,
                "scale_threshold": scale_threshold,
                "clamp": clamp,
                "workers": workers,
                "sport": sport,
                "include_private": include_private,
                "include_manual": include_manual,
                "drop_missing": drop_missing,
            },
        }
        _write_json_sidecar(output, meta, split, efforts)

    if not no_plot:
        png_path = png
        if png_path is None:
            png_path = output[:-4] + ".png" if output.lower().endswith(".csv") else output + ".png"
        try:
            plot_fastest_splits(split, paces, efforts, png_path, unit=unit)
            logging.info("Wrote plot: %s", png_path)
        except (OSError, RuntimeError, ValueError) as e:
            logging.error(f"Plotting failed: {e}")
    profiler.lap("plot")

    return 0


def _run_activities(
    data_dir: Optional[str],
    output: str,
    verbose: bool = False,
    log_file: Optional[str] = None,
) -> int:
    _setup_logging(verbose, log_file=log_file)
    try:
        raw = LocalActivitySource(data_dir).raw_activities()
    except (OSError, RuntimeError) as exc:
        logging.error(str(exc))
        return 2
    if not raw:
        logging.error("Activity list is empty; nothing to write.")
        return 3

    table = activity_table(raw)
    fieldnames = list(table[0].keys())
    try:
        with open(output, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for row in table:
                writer.writerow({k: (json.dumps(v) if isinstance(v, (list, dict)) else v) for k, v in row.items()})
    except OSError as exc:
        logging.error(f"Failed to write {output}: {exc}")
        return 2
    logging.info("Wrote %d activities: %s", len(table), output)
    return 0


def _build_typer_app():  # pragma: no cover
    app = typer.Typer(add_completion=False, help="Fastest splits across a Strava activity history.")

    @app.command(name="splits")
    def splits(
        data_dir: Optional[str] = typer.Argument(None, help=f"Local Strava export directory (default: $STRAVA_DATA_DIR or {DATA_DIR})"),
        output: str = typer.Option("splits.csv", "--output", "-o", help="Output CSV path"),
        race_distances: Optional[str] = typer.Option(None, "--race-distances", help="Extra leaderboard distances, e.g. '3k,25k,13.1mi'"),
        race_file: Optional[str] = typer.Option(None, "--race-file", help="File with extra distances (tokens per line, # comments)"),
        grid_step: float = typer.Option(DEFAULT_GRID_STEP_MILES, "--grid-step", help="Grid resolution in miles for the split curve"),
        unit: str = typer.Option("mile", "--unit", help="Pace unit: mile|km"),
        scale_threshold: float = typer.Option(DEFAULT_SCALE_THRESHOLD, "--scale-threshold", help="Rescale distance streams when |reported/recorded - 1| exceeds this"),
        clamp: bool = typer.Option(True, "--clamp/--no-clamp", help="Clamp distance streams to a running maximum before the window scan"),
        workers: int = typer.Option(DEFAULT_WORKERS, "--workers", help="Worker threads across activities (0=auto, 1=serial)"),
        engine: str = typer.Option("auto", "--engine", help="Split engine: auto|python|numba"),
        sport: str = typer.Option("run", "--sport", help="Keep activities whose sport type contains this text ('' for all)"),
        include_private: bool = typer.Option(False, "--include-private", help="Include private activities"),
        include_manual: bool = typer.Option(False, "--include-manual", help="Include manually entered activities"),
        drop_missing: bool = typer.Option(False, "--drop-missing", help="Exclude activities without streams from the matrix"),
        png: Optional[str] = typer.Option(None, "--png", help="Optional output PNG path (defaults next to CSV)"),
        no_plot: bool = typer.Option(False, "--no-plot", help="Disable PNG generation"),
        json_sidecar: bool = typer.Option(False, "--json-sidecar", help="Also write a JSON file with diagnostics next to the CSV"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
        profile: bool = typer.Option(False, "--profile/--no-profile", help="Log stage timings for performance profiling"),
    ) -> None:
        """Compute the fastest split for every distance and print the leaderboard."""
        code = _run_splits(
            data_dir,
            output,
            race_distances=race_distances,
            race_file=race_file,
            grid_step=grid_step,
            unit=unit,
            scale_threshold=scale_threshold,
            clamp=clamp,
            workers=workers,
            engine=engine,
            sport=sport,
            include_private=include_private,
            include_manual=include_manual,
            drop_missing=drop_missing,
            png=png,
            no_plot=no_plot,
            json_sidecar=json_sidecar,
            verbose=verbose,
            log_file=log_file,
            profile=profile,
            echo=typer.echo,
        )
        raise typer.Exit(code)

    @app.command(name="activities")
    def activities(
        data_dir: Optional[str] = typer.Argument(None, help="Local Strava export directory"),
        output: str = typer.Option("activities.csv", "--output", "-o", help="Output CSV path"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
        log_file: Optional[str] = typer.Option(None, "--log-file", help="Optional log file path for diagnostics"),
    ) -> None:
        """Write the flattened activity list as a CSV table."""
        code = _run_activities(data_dir, output, verbose=verbose, log_file=log_file)
        raise typer.Exit(code)

    return app


def main_cli() -> int:
    app = _build_typer_app()
    app()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main_cli())
