from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from tidyrun import (
    LEGACY_BATCH_ID,
    Action,
    Config,
    OperationLog,
    OrganizeOptions,
    Status,
    UndoEngine,
    UndoOptions,
    organize,
    undo_last_run,
)


class UndoTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tempdir.name)
        self.videos = self.root / "Videos"
        self.log_path = self.root / "state" / "ops.jsonl"
        self.config = Config(
            VIDEOS_DIR=str(self.videos),
            PICTURES_DIR=str(self.root / "Pictures"),
            MEDIA_ROOT=str(self.videos),
            LOG_FILE=str(self.log_path),
        )
        self.work = self.root / "work"
        self.work.mkdir()

    def tearDown(self) -> None:
        self.tempdir.cleanup()

    def make_file(self, path: Path, content: str | None = None) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content if content is not None else path.name, encoding="utf-8")
        return path

    def records(self):
        return OperationLog(self.log_path).read_all()


class RunUndoTests(UndoTestCase):
    def test_round_trip_restores_every_file(self) -> None:
        names = ("a.pdf", "b.mp4", "c.xyz", "d.jpg")
        for name in names:
            self.make_file(self.work / name)
        self.make_file(self.work / "Documents" / "a.pdf", "occupied")
        run = organize(self.work, config=self.config)
        moved = [r for r in self.records() if r.run_id == run.run_id and r.is_reversible]

        result = undo_last_run(config=self.config)

        self.assertEqual(result.run_id, run.run_id)
        self.assertEqual(result.undone_count, len(moved))
        self.assertEqual(result.error_count, 0)
        for name in names:
            self.assertEqual((self.work / name).read_text(encoding="utf-8"), name)
        self.assertEqual((self.work / "Documents" / "a.pdf").read_text(encoding="utf-8"), "occupied")

    def test_undo_is_bracketed_and_traceable(self) -> None:
        self.make_file(self.work / "a.pdf")
        run = organize(self.work, config=self.config)
        result = undo_last_run(config=self.config)

        undo_records = [r for r in self.records() if r.run_id == result.undo_run_id]
        self.assertNotEqual(result.undo_run_id, run.run_id)
        self.assertEqual(undo_records[0].action, Action.UNDO_START)
        self.assertEqual(undo_records[-1].action, Action.UNDO_END)
        self.assertEqual(undo_records[0].target_run_id, run.run_id)
        self.assertEqual(undo_records[-1].target_run_id, run.run_id)
        self.assertEqual([r.action for r in undo_records[1:-1]], [Action.UNDO])

    def test_series_round_trip_with_season_folders(self) -> None:
        series = self.videos / "Series"
        for name in ("The.Office.S02E05.mkv", "The.Office.S01E01.mkv", "Movie.Night.2020.mp4"):
            self.make_file(series / name)
        self.make_file(series / "Lost S01" / "pilot.mkv")
        self.make_file(series / "Lost S02" / "premiere.mkv")
        organize(series, config=self.config)
        self.assertTrue((series / "Lost" / "Lost S01" / "pilot.mkv").exists())

        result = undo_last_run(UndoOptions(remove_empty_dirs=True), self.config)

        self.assertEqual((result.undone_count, result.error_count), (5, 0))
        for name in ("The.Office.S02E05.mkv", "The.Office.S01E01.mkv", "Movie.Night.2020.mp4"):
            self.assertTrue((series / name).exists())
        self.assertTrue((series / "Lost S01" / "pilot.mkv").exists())
        self.assertFalse((series / "The Office").exists())
        self.assertFalse((series / "Movies").exists())
        self.assertFalse((series / "Lost").exists())
        self.assertTrue(series.exists())

    def test_empty_folders_stay_by_default(self) -> None:
        self.make_file(self.work / "a.pdf")
        organize(self.work, config=self.config)
        undo_last_run(config=self.config)
        self.assertTrue((self.work / "Documents").is_dir())

    def test_dry_runs_are_not_undo_targets(self) -> None:
        self.make_file(self.work / "a.pdf")
        real = organize(self.work, config=self.config)
        self.make_file(self.work / "b.pdf")
        organize(self.work, OrganizeOptions(dry_run=True), self.config)

        result = undo_last_run(config=self.config)

        self.assertEqual(result.run_id, real.run_id)
        self.assertTrue((self.work / "a.pdf").exists())

    def test_undo_dry_run_changes_nothing(self) -> None:
        for name in ("a.pdf", "b.mp4"):
            self.make_file(self.work / name)
        organize(self.work, config=self.config)

        result = undo_last_run(UndoOptions(dry_run=True), self.config)

        self.assertEqual((result.undone_count, result.error_count), (2, 0))
        self.assertTrue(all(o.status == Status.PREVIEW for o in result.preview))
        self.assertTrue((self.work / "Documents" / "a.pdf").exists())
        self.assertFalse((self.work / "a.pdf").exists())
        self.assertTrue(all(r.dry_run for r in self.records() if r.run_id == result.undo_run_id))

    def test_vanished_destination_is_skipped_and_counted(self) -> None:
        for name in ("a.pdf", "b.mp4"):
            self.make_file(self.work / name)
        organize(self.work, config=self.config)
        (self.work / "Videos" / "b.mp4").unlink()

        with self.assertLogs(level="WARNING"):
            result = undo_last_run(config=self.config)

        self.assertEqual((result.undone_count, result.error_count), (1, 1))
        self.assertTrue((self.work / "a.pdf").exists())
        skipped = [o for o in result.preview if o.status == Status.SKIPPED]
        self.assertEqual([Path(o.source).name for o in skipped], ["b.mp4"])

    def test_occupied_original_location_is_not_overwritten(self) -> None:
        self.make_file(self.work / "a.pdf", "organized")
        organize(self.work, config=self.config)
        self.make_file(self.work / "a.pdf", "newcomer")

        undo_last_run(config=self.config)

        self.assertEqual((self.work / "a.pdf").read_text(encoding="utf-8"), "newcomer")
        self.assertEqual((self.work / "a (1).pdf").read_text(encoding="utf-8"), "organized")

    def test_explicit_run_id(self) -> None:
        self.make_file(self.work / "a.pdf")
        first = organize(self.work, config=self.config)
        self.make_file(self.work / "b.pdf")
        organize(self.work, config=self.config)

        result = undo_last_run(UndoOptions(run_id=first.run_id), self.config)

        self.assertEqual(result.run_id, first.run_id)
        self.assertTrue((self.work / "a.pdf").exists())
        self.assertTrue((self.work / "Documents" / "b.pdf").exists())

    def test_nothing_to_undo(self) -> None:
        result = undo_last_run(config=self.config)
        self.assertIsNone(result.run_id)
        self.assertIsNone(result.undo_run_id)
        self.assertEqual((result.undone_count, result.error_count), (0, 0))
        self.assertEqual(result.message, "No previous run found to undo.")
        self.assertFalse(self.log_path.exists())

    def test_run_without_successful_moves(self) -> None:
        organize(self.work, config=self.config)
        result = undo_last_run(config=self.config)
        self.assertEqual(result.undone_count, 0)
        self.assertEqual(result.message, "No successful move/group operations to undo.")
        self.assertFalse(any(r.action == Action.UNDO_START for r in self.records()))

    def test_unknown_run_id(self) -> None:
        result = undo_last_run(UndoOptions(run_id="run-missing"), self.config)
        self.assertEqual(result.run_id, "run-missing")
        self.assertEqual(result.message, "No successful move/group operations to undo.")


class LegacyBatchTests(UndoTestCase):
    """Logs written before run ids existed. The batch boundary is a best-effort guess."""

    def setUp(self) -> None:
        super().setUp()
        self.anchor = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def legacy_move(self, name: str, offset: timedelta, **extra) -> dict:
        source = self.work / name
        destination = self.work / "Moved" / name
        self.make_file(destination)
        entry = {
            "timestamp": (self.anchor + offset).isoformat(),
            "action": "move",
            "status": "success",
            "source": str(source),
            "destination": str(destination),
            "message": f"{name} moved successfully.",
        }
        entry.update(extra)
        return entry

    def write_log(self, entries: list[dict]) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.write_text("".join(json.dumps(e) + "\n" for e in entries), encoding="utf-8")

    def test_adjacent_moves_form_one_batch(self) -> None:
        self.write_log([
            self.legacy_move("old.txt", timedelta(minutes=-10)),
            self.legacy_move("a.txt", timedelta(0)),
            self.legacy_move("b.txt", timedelta(seconds=60)),
            self.legacy_move("c.txt", timedelta(seconds=150)),
        ])

        result = undo_last_run(config=self.config)

        self.assertEqual(result.run_id, LEGACY_BATCH_ID)
        self.assertEqual((result.undone_count, result.error_count), (3, 0))
        for name in ("a.txt", "b.txt", "c.txt"):
            self.assertTrue((self.work / name).exists())
        self.assertTrue((self.work / "Moved" / "old.txt").exists())
        self.assertEqual([Path(o.destination).name for o in result.preview], ["c.txt", "b.txt", "a.txt"])

    def test_batch_stops_at_non_candidate(self) -> None:
        entries = [
            self.legacy_move("a.txt", timedelta(0)),
            self.legacy_move("skipped.txt", timedelta(seconds=10), status="error"),
            self.legacy_move("b.txt", timedelta(seconds=20)),
        ]
        self.write_log(entries)
        records = OperationLog(self.log_path).read_all()

        batch = UndoEngine.find_legacy_batch(records)

        self.assertEqual([Path(r.source).name for r in batch], ["b.txt"])

    def test_newer_run_scoped_records_are_passed_over(self) -> None:
        entries = [
            self.legacy_move("a.txt", timedelta(0)),
            self.legacy_move("b.txt", timedelta(seconds=30)),
            {"timestamp": (self.anchor + timedelta(minutes=5)).isoformat(), "run_id": "run-dry",
             "action": "run-end", "status": "success", "dry_run": True},
        ]
        self.write_log(entries)
        batch = UndoEngine.find_legacy_batch(OperationLog(self.log_path).read_all())
        self.assertEqual([Path(r.source).name for r in batch], ["a.txt", "b.txt"])

    def test_gap_and_bad_timestamps_end_the_batch(self) -> None:
        entries = [
            self.legacy_move("a.txt", timedelta(0)),
            self.legacy_move("b.txt", timedelta(minutes=5)),
            self.legacy_move("c.txt", timedelta(minutes=6)),
        ]
        self.write_log(entries)
        batch = UndoEngine.find_legacy_batch(OperationLog(self.log_path).read_all())
        self.assertEqual([Path(r.source).name for r in batch], ["b.txt", "c.txt"])

        entries[1]["timestamp"] = "yesterday-ish"
        self.write_log(entries)
        batch = UndoEngine.find_legacy_batch(OperationLog(self.log_path).read_all())
        self.assertEqual([Path(r.source).name for r in batch], ["c.txt"])

    def test_blocked_parent_gives_same_outcome_in_dry_run(self) -> None:
        self.make_file(self.work / "blocked", "a file where a folder should be")
        entry = self.legacy_move("a.txt", timedelta(0))
        entry["source"] = str(self.work / "blocked" / "a.txt")
        self.write_log([entry])

        outcomes = []
        for dry_run in (True, False):
            with self.assertLogs(level="ERROR"):
                result = undo_last_run(UndoOptions(dry_run=dry_run), self.config)
            outcomes.append([(o.status, o.destination) for o in result.preview])
            self.assertEqual((result.undone_count, result.error_count), (0, 1))

        self.assertEqual(outcomes[0], outcomes[1])
        self.assertEqual(outcomes[0][0][0], Status.ERROR)
        self.assertTrue((self.work / "Moved" / "a.txt").exists())

    def test_missing_parent_folder_is_recreated(self) -> None:
        entry = self.legacy_move("a.txt", timedelta(0))
        entry["source"] = str(self.work / "gone" / "deeper" / "a.txt")
        self.write_log([entry])

        result = undo_last_run(config=self.config)

        self.assertEqual(result.undone_count, 1)
        self.assertTrue((self.work / "gone" / "deeper" / "a.txt").exists())


if __name__ == "__main__":
    unittest.main()
