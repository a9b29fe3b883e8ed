from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import fs_plotting
import fs_splits
from fs_splits import ActivityStream


def _split():
    activities = [
        ActivityStream("A", [0, 300, 1200], [0.0, 1609.34, 5000.0], 5000.0),
        ActivityStream("B", [0, 280], [0.0, 1609.34], 1609.34),
    ]
    # nothing covers 10 km, so the last row stays empty
    return fs_splits.evaluate_activities(activities, [1609.34, 5000.0, 10000.0], workers=1)


class TestPlotFastestSplits(unittest.TestCase):
    def test_writes_png_with_empty_row(self) -> None:
        split = _split()
        paces, efforts = fs_splits.best_effort_curve(split)
        self.assertFalse(efforts[2].has_data)
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "splits.png"
            fs_plotting.plot_fastest_splits(split, paces, efforts, str(out))
            self.assertTrue(out.is_file())
            self.assertGreater(out.stat().st_size, 0)

    def test_no_finite_paces_skips_plot(self) -> None:
        split = fs_splits.evaluate_activities(
            [ActivityStream("short", [0, 60], [0.0, 200.0], 200.0)], [1609.34], workers=1
        )
        paces, efforts = fs_splits.best_effort_curve(split)
        with tempfile.TemporaryDirectory() as tmp:
            out = Path(tmp) / "splits.png"
            with self.assertLogs(level="WARNING"):
                fs_plotting.plot_fastest_splits(split, paces, efforts, str(out))
            self.assertFalse(out.exists())


if __name__ == "__main__":
    unittest.main()
