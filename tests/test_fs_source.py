from __future__ import annotations

import json
import math
import tempfile
import unittest
from pathlib import Path

import fs_source
import fs_splits


def _summary(activity_id, **overrides):
    raw = {
        "id": activity_id,
        "name": f"Run {activity_id}",
        "sport_type": "Run",
        "type": "Run",
        "distance": 5000.0,
        "start_date_local": "2024-05-01T07:00:00Z",
        "private": False,
        "manual": False,
        "map": {"id": f"a{activity_id}", "summary_polyline": "abc"},
    }
    raw.update(overrides)
    return raw


class TestDictHelpers(unittest.TestCase):
    def test_flatten_subdicts(self) -> None:
        flat = fs_source.flatten_subdicts({"a": {"b": 1, "c": 2}, "d": 3})
        self.assertEqual(flat, {"a_b": 1, "a_c": 2, "d": 3})

    def test_flatten_is_one_level_per_pass(self) -> None:
        flat = fs_source.flatten_subdicts({"a": {"b": {"c": 1}}})
        self.assertEqual(flat, {"a_b": {"c": 1}})

    def test_flatten_leaves_input_alone(self) -> None:
        raw = {"a": {"b": 1}}
        fs_source.flatten_subdicts(raw)
        self.assertEqual(raw, {"a": {"b": 1}})

    def test_fill_dicts(self) -> None:
        filled = fs_source.fill_dicts([{"a": 1}, {"c": 2}])
        self.assertEqual(filled, [{"a": 1, "c": None}, {"a": None, "c": 2}])

    def test_activity_table(self) -> None:
        table = fs_source.activity_table([_summary(1), {"id": 2, "name": "bare"}])
        self.assertEqual(table[0]["map_summary_polyline"], "abc")
        self.assertIsNone(table[1]["map_id"])
        self.assertEqual(list(table[0]), list(table[1]))


class TestStreamsPayload(unittest.TestCase):
    def test_key_by_type(self) -> None:
        payload = {"time": {"data": [0, 1]}, "distance": {"data": [0, 3.5]}, "heartrate": {"data": [90, 91]}}
        self.assertEqual(fs_source.streams_from_payload(payload), ([0, 1], [0.0, 3.5]))

    def test_list_form(self) -> None:
        payload = [{"type": "distance", "data": [0.0, 2.0]}, {"type": "time", "data": [0, 2]}]
        self.assertEqual(fs_source.streams_from_payload(payload), ([0, 2], [0.0, 2.0]))

    def test_missing_stream_is_absent(self) -> None:
        self.assertIsNone(fs_source.streams_from_payload({"time": {"data": [0, 1]}}))

    def test_empty_stream_is_not_absent(self) -> None:
        self.assertEqual(fs_source.streams_from_payload({"time": {"data": []}, "distance": {"data": []}}), ([], []))


class TestSources(unittest.TestCase):
    def test_summary_from_dict(self) -> None:
        s = fs_source.ActivitySummary.from_dict(_summary(7, distance=None, sport_type=None, type="TrailRun"))
        self.assertEqual(s.id, 7)
        self.assertEqual(s.sport_type, "TrailRun")
        self.assertTrue(math.isnan(s.distance_m))
        self.assertEqual(s.extra["map_id"], "a7")

    def test_filter_activities(self) -> None:
        summaries = [
            fs_source.ActivitySummary.from_dict(raw)
            for raw in (
                _summary(1),
                _summary(2, sport_type="Ride"),
                _summary(3, private=True),
                _summary(4, manual=True),
                _summary(5, sport_type="TrailRun"),
            )
        ]
        self.assertEqual([s.id for s in fs_source.filter_activities(summaries)], [1, 5])
        kept = fs_source.filter_activities(summaries, include_private=True, include_manual=True)
        self.assertEqual([s.id for s in kept], [1, 3, 4, 5])
        self.assertEqual(len(fs_source.filter_activities(summaries, sport="")), 3)

    def test_in_memory_source(self) -> None:
        source = fs_source.InMemoryActivitySource(
            [_summary(1), _summary(2)],
            {1: {"time": {"data": [0, 300]}, "distance": {"data": [0.0, 1000.0]}}},
        )
        streams = fs_source.load_activity_streams(source, source.list_activities())
        self.assertEqual(streams[0].time, [0, 300])
        self.assertEqual(streams[0].reported_total_distance, 5000.0)
        self.assertEqual(streams[0].metadata["map_id"], "a1")
        self.assertIsNone(streams[1].time)
        self.assertIsNone(streams[1].distance)
        self.assertEqual(source.cached_activity_ids(), [1])

    def test_local_source(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "activities.json").write_text(json.dumps([_summary(11), _summary(12), {"name": "no id"}]))
            (root / "streams").mkdir()
            (root / "streams" / "11.json").write_text(
                json.dumps({"time": {"data": [0, 10, 20]}, "distance": {"data": [0, 50, 100]}})
            )
            (root / "streams" / "12.json").write_text("{not json")

            source = fs_source.LocalActivitySource(tmp)
            with self.assertLogs(level="WARNING"):
                summaries = source.list_activities()
            self.assertEqual([s.id for s in summaries], [11, 12])
            self.assertEqual(source.cached_activity_ids(), [11, 12])
            self.assertEqual(source.get_stream(11), ([0, 10, 20], [0.0, 50.0, 100.0]))
            with self.assertLogs(level="WARNING"):
                self.assertIsNone(source.get_stream(12))
            self.assertIsNone(source.get_stream(99))

    def test_null_samples_reach_batch_as_invalid(self) -> None:
        source = fs_source.InMemoryActivitySource(
            [_summary(1)],
            {1: {"time": {"data": [0, None, 600]}, "distance": {"data": [0.0, 1000.0, 2000.0]}}},
        )
        streams = fs_source.load_activity_streams(source, source.list_activities())
        self.assertEqual(streams[0].time, [0, None, 600])
        with self.assertLogs(level="WARNING"):
            split = fs_splits.evaluate_activities(streams, [1000.0], workers=1)
        self.assertEqual(list(split.invalid), [1])
        self.assertEqual(split.no_data, [])

    def test_local_source_missing_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = fs_source.LocalActivitySource(str(Path(tmp) / "missing"))
            with self.assertRaises(RuntimeError):
                source.list_activities()


if __name__ == "__main__":
    unittest.main()
