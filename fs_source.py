from __future__ import annotations

# Activity data source: reads a local Strava export (activity summaries plus
# per-activity streams) and turns it into ActivityStream records for fs_splits.
# Fetching from the Strava API and token handling live outside this repo.

import json
import logging
import math
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from fs_splits import ActivityStream


DATA_DIR = os.environ.get("STRAVA_DATA_DIR", tempfile.gettempdir())
ACTIVITIES_FILE = "activities.json"
STREAMS_DIR = "streams"

Streams = Tuple[List[int], List[float]]


@dataclass
class ActivitySummary:
    id: int
    name: str
    sport_type: str
    distance_m: float
    start_date_local: Optional[str] = None
    private: bool = False
    manual: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ActivitySummary":
        if "id" not in raw:
            raise ValueError("activity summary without id")
        distance = raw.get("distance")
        try:
            distance_m = float(distance) if distance is not None else math.nan
        except (TypeError, ValueError):
            distance_m = math.nan
        known = {"id", "name", "sport_type", "type", "distance", "start_date_local", "private", "manual"}
        return cls(
            id=int(raw["id"]),
            name=str(raw.get("name") or ""),
            sport_type=str(raw.get("sport_type") or raw.get("type") or ""),
            distance_m=distance_m,
            start_date_local=raw.get("start_date_local"),
            private=bool(raw.get("private", False)),
            manual=bool(raw.get("manual", False)),
            extra=flatten_subdicts({k: v for k, v in raw.items() if k not in known}),
        )


# -----------------
# Dict helpers for tabular display
# -----------------

def flatten_subdicts(d: Mapping[str, Any]) -> Dict[str, Any]:
    """Lift nested dicts one level: ``{"map": {"id": 1}}`` -> ``{"map_id": 1}``."""
    flat: Dict[str, Any] = {}
    for key, value in d.items():
        if isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[key] = value
    return flat


def fill_dicts(dicts: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Give every dict the union of all keys; absent entries become None."""
    all_keys: List[str] = []
    seen = set()
    for d in dicts:
        for key in d:
            if key not in seen:
                seen.add(key)
                all_keys.append(key)
    return [{key: d.get(key) for key in all_keys} for d in dicts]


def activity_table(raw_activities: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return fill_dicts([flatten_subdicts(raw) for raw in raw_activities])


# -----------------
# Stream payloads
# -----------------

def _stream_data(payload: Any, key: str) -> Optional[List[Any]]:
    # key_by_type=true: {"time": {"data": [...]}, ...}
    if isinstance(payload, Mapping):
        entry = payload.get(key)
        if isinstance(entry, Mapping) and isinstance(entry.get("data"), list):
            return entry["data"]
        if isinstance(entry, list):
            return entry
        return None
    # key_by_type=false: [{"type": "time", "data": [...]}, ...]
    if isinstance(payload, list):
        for entry in payload:
            if isinstance(entry, Mapping) and entry.get("type") == key and isinstance(entry.get("data"), list):
                return entry["data"]
    return None


def streams_from_payload(payload: Any) -> Optional[Streams]:
    time_data = _stream_data(payload, "time")
    distance_data = _stream_data(payload, "distance")
    if time_data is None or distance_data is None:
        return None
    # samples are converted (and rejected) per activity by the batch evaluator
    return list(time_data), list(distance_data)


def _read_json(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Failed to parse {path}: {exc}") from exc


# -----------------
# Sources
# -----------------

class LocalActivitySource:
    """Activities exported to ``<data_dir>/activities.json`` and ``<data_dir>/streams/<id>.json``."""

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.data_dir = Path(data_dir or DATA_DIR).expanduser()

    @property
    def activities_path(self) -> Path:
        return self.data_dir / ACTIVITIES_FILE

    @property
    def streams_dir(self) -> Path:
        return self.data_dir / STREAMS_DIR

    def raw_activities(self) -> List[Dict[str, Any]]:
        if not self.data_dir.is_dir():
            raise RuntimeError(f"Data directory {self.data_dir} does not exist.")
        if not self.activities_path.is_file():
            raise RuntimeError(f"No activity list found at {self.activities_path}.")
        data = _read_json(self.activities_path)
        if not isinstance(data, list):
            raise RuntimeError(f"{self.activities_path} must contain a JSON list of activities.")
        activities = [dict(item) for item in data if isinstance(item, Mapping)]
        logging.info("Loaded %d activities from %s", len(activities), self.activities_path)
        return activities

    def list_activities(self) -> List[ActivitySummary]:
        return _summaries(self.raw_activities())

    def cached_activity_ids(self) -> List[int]:
        if not self.streams_dir.is_dir():
            logging.warning("No cached streams found in %s.", self.streams_dir)
            return []
        ids: List[int] = []
        for path in sorted(self.streams_dir.glob("*.json")):
            try:
                ids.append(int(path.stem))
            except ValueError:
                logging.debug("Ignoring stream file %s", path.name)
        return ids

    def get_stream(self, activity_id: int) -> Optional[Streams]:
        path = self.streams_dir / f"{activity_id}.json"
        if not path.is_file():
            return None
        try:
            payload = _read_json(path)
        except RuntimeError as exc:
            logging.warning("%s", exc)
            return None
        return streams_from_payload(payload)


class InMemoryActivitySource:
    def __init__(
        self,
        activities: Sequence[Mapping[str, Any]],
        streams: Optional[Mapping[int, Any]] = None,
    ) -> None:
        self._activities = [dict(a) for a in activities]
        self._streams = dict(streams or {})

    def raw_activities(self) -> List[Dict[str, Any]]:
        return [dict(a) for a in self._activities]

    def list_activities(self) -> List[ActivitySummary]:
        return _summaries(self._activities)

    def cached_activity_ids(self) -> List[int]:
        return sorted(int(k) for k in self._streams)

    def get_stream(self, activity_id: int) -> Optional[Streams]:
        payload = self._streams.get(activity_id)
        if payload is None:
            return None
        return streams_from_payload(payload)


def _summaries(raw_activities: Iterable[Mapping[str, Any]]) -> List[ActivitySummary]:
    out: List[ActivitySummary] = []
    for raw in raw_activities:
        try:
            out.append(ActivitySummary.from_dict(raw))
        except (TypeError, ValueError) as exc:
            logging.warning("Skipping activity summary: %s", exc)
    return out


def filter_activities(
    summaries: Sequence[ActivitySummary],
    sport: Optional[str] = "run",
    include_private: bool = False,
    include_manual: bool = False,
) -> List[ActivitySummary]:
    needle = (sport or "").strip().lower()
    kept: List[ActivitySummary] = []
    for s in summaries:
        if needle and needle not in s.sport_type.lower():
            continue
        if s.private and not include_private:
            continue
        if s.manual and not include_manual:
            continue
        kept.append(s)
    logging.info("Selected %d of %d activities (sport=%s)", len(kept), len(summaries), needle or "any")
    return kept


def load_activity_streams(source, summaries: Sequence[ActivitySummary]) -> List[ActivityStream]:
    """Join summaries with their streams; absent streams stay ``None``."""
    activities: List[ActivityStream] = []
    missing = 0
    for s in summaries:
        try:
            streams = source.get_stream(s.id)
        except (TypeError, ValueError) as exc:
            logging.warning("Unreadable streams for activity %s: %s", s.id, exc)
            streams = None
        if streams is None:
            missing += 1
            time_data, distance_data = None, None
        else:
            time_data, distance_data = streams
        activities.append(
            ActivityStream(
                activity_id=s.id,
                time=time_data,
                distance=distance_data,
                reported_total_distance=s.distance_m,
                name=s.name,
                start_date_local=s.start_date_local,
                metadata=dict(s.extra),
            )
        )
    if missing:
        logging.info("%d of %d activities have no cached streams", missing, len(summaries))
    return activities
