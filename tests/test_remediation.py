"""Tests for the remediation state machine and the report builder."""

import csv
import shutil

import pytest

from filevet_core import (
    DuplicateGroup,
    FileVetError,
    FlaggedFile,
    RemediationAction,
    RemediationEngine,
    RemediationMode,
    RemediationOutcome,
    RemediationState,
    build_report,
    write_report_csv,
)


@pytest.fixture
def flagged(tmp_path):
    """Three flagged files on disk, in discovery order."""
    media = tmp_path / "media"
    media.mkdir()
    files = []
    for i in range(3):
        p = media / f"clip{i}.mkv"
        p.write_bytes(b"broken")
        files.append(FlaggedFile(str(p), f"error {i}", i))
    return files


def _always(answer):
    calls = []

    def confirm(prompt):
        calls.append(prompt)
        return answer

    confirm.calls = calls
    return confirm


# =============================================================================
# Confirmation
# =============================================================================


class TestConfirmation:
    def test_decline_skips_everything(self, flagged, tmp_path):
        """Answering no marks every file Skipped and touches nothing."""
        confirm = _always(False)
        engine = RemediationEngine(flagged, RemediationMode.DELETE, confirm=confirm)

        outcomes = engine.run()

        assert engine.state is RemediationState.DONE
        assert [o.action for o in outcomes] == [RemediationAction.SKIPPED] * 3
        assert all((tmp_path / "media" / f"clip{i}.mkv").exists() for i in range(3))
        assert confirm.calls == ["Delete 3 flagged file(s)?"]

    def test_nothing_flagged_never_prompts(self):
        """An empty flagged list goes straight to DONE."""
        confirm = _always(True)
        engine = RemediationEngine([], RemediationMode.MOVE, "/tmp/q", confirm=confirm)

        assert engine.run() == []
        assert engine.state is RemediationState.DONE
        assert confirm.calls == []

    def test_mode_none_reports_only(self, flagged):
        """Report-only mode skips without asking."""
        confirm = _always(True)
        outcomes = RemediationEngine(flagged, RemediationMode.NONE, confirm=confirm).run()

        assert [o.action for o in outcomes] == [RemediationAction.SKIPPED] * 3
        assert confirm.calls == []

    def test_runs_once(self, flagged):
        """The engine is terminal after DONE."""
        engine = RemediationEngine(flagged, RemediationMode.NONE)
        engine.run()
        with pytest.raises(FileVetError):
            engine.run()


# =============================================================================
# Acting
# =============================================================================


class TestMove:
    def test_moves_into_created_quarantine(self, flagged, tmp_path):
        """The quarantine directory is created and every file lands in it."""
        quarantine = tmp_path / "quarantine"
        engine = RemediationEngine(flagged, RemediationMode.MOVE, str(quarantine), _always(True))

        outcomes = engine.run()

        assert [o.action for o in outcomes] == [RemediationAction.MOVED] * 3
        assert sorted(p.name for p in quarantine.iterdir()) == ["clip0.mkv", "clip1.mkv", "clip2.mkv"]

    def test_existing_quarantine_is_fine(self, flagged, tmp_path):
        """Creating the quarantine directory is idempotent."""
        quarantine = tmp_path / "quarantine"
        quarantine.mkdir()
        outcomes = RemediationEngine(flagged, RemediationMode.MOVE, str(quarantine), _always(True)).run()
        assert all(o.action is RemediationAction.MOVED for o in outcomes)

    def test_name_collision_is_renamed(self, flagged, tmp_path):
        """A file already in quarantine is never overwritten."""
        quarantine = tmp_path / "quarantine"
        quarantine.mkdir()
        (quarantine / "clip0.mkv").write_bytes(b"older")

        outcomes = RemediationEngine(flagged[:1], RemediationMode.MOVE, str(quarantine), _always(True)).run()

        assert outcomes[0].action is RemediationAction.MOVED
        assert (quarantine / "clip0.mkv").read_bytes() == b"older"
        assert (quarantine / "clip0 (1).mkv").exists()
        assert outcomes[0].detail.endswith("clip0 (1).mkv")

    def test_second_failure_does_not_stop_the_rest(self, flagged, tmp_path, monkeypatch):
        """When the 2nd move throws, the 1st and 3rd are still moved."""
        real_move = shutil.move

        def flaky_move(src, dst):
            if src.endswith("clip1.mkv"):
                raise PermissionError("file is locked")
            return real_move(src, dst)

        monkeypatch.setattr(shutil, "move", flaky_move)
        engine = RemediationEngine(flagged, RemediationMode.MOVE, str(tmp_path / "q"), _always(True))

        outcomes = engine.run()

        assert [o.path for o in outcomes] == [f.path for f in flagged]
        assert [o.action for o in outcomes] == [
            RemediationAction.MOVED, RemediationAction.FAILED, RemediationAction.MOVED,
        ]
        assert outcomes[1].detail == "file is locked"

    def test_missing_file_fails_alone(self, flagged, tmp_path):
        """A file that vanished is Failed; the others still move."""
        (tmp_path / "media" / "clip1.mkv").unlink()
        outcomes = RemediationEngine(flagged, RemediationMode.MOVE, str(tmp_path / "q"), _always(True)).run()

        assert outcomes[1].action is RemediationAction.FAILED
        assert "File not found" in outcomes[1].detail
        assert outcomes[0].action is outcomes[2].action is RemediationAction.MOVED

    def test_unusable_quarantine_fails_every_file(self, flagged, tmp_path):
        """If the quarantine cannot be created, each file records why."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        engine = RemediationEngine(flagged, RemediationMode.MOVE, str(blocker / "q"), _always(True))

        outcomes = engine.run()

        assert len(outcomes) == 3
        assert all(o.action is RemediationAction.FAILED for o in outcomes)
        assert engine.state is RemediationState.DONE


class TestDelete:
    def test_second_failure_does_not_stop_the_rest(self, flagged, tmp_path):
        """When the 2nd delete throws, the 1st and 3rd are still deleted."""
        (tmp_path / "media" / "clip1.mkv").unlink()
        outcomes = RemediationEngine(flagged, RemediationMode.DELETE, confirm=_always(True)).run()

        assert [o.action for o in outcomes] == [
            RemediationAction.DELETED, RemediationAction.FAILED, RemediationAction.DELETED,
        ]
        assert "clip1.mkv" in outcomes[1].detail
        assert not (tmp_path / "media" / "clip0.mkv").exists()
        assert not (tmp_path / "media" / "clip2.mkv").exists()

    def test_malformed_path_fails_alone(self, flagged, tmp_path):
        """A path the OS rejects outright (ValueError) is Failed; the rest still run."""
        bad = flagged[1]
        flagged[1] = FlaggedFile(bad.path + "\x00", bad.diagnostic, bad.sequence)

        outcomes = RemediationEngine(flagged, RemediationMode.DELETE, confirm=_always(True)).run()

        assert [o.action for o in outcomes] == [
            RemediationAction.DELETED, RemediationAction.FAILED, RemediationAction.DELETED,
        ]
        assert outcomes[1].detail.startswith("ValueError: ")
        assert not (tmp_path / "media" / "clip2.mkv").exists()
        assert (tmp_path / "media" / "clip1.mkv").exists()


# =============================================================================
# Report Builder
# =============================================================================


class TestReport:
    def test_records_shape_and_order(self):
        """Duplicates first, then one record per outcome."""
        groups = [DuplicateGroup("abc123", ("/x/1.mkv", "/y/1.mkv"))]
        outcomes = [
            RemediationOutcome("/a.mkv", RemediationAction.MOVED, "/q/a.mkv"),
            RemediationOutcome("/b.mkv", RemediationAction.FAILED, "file is locked"),
        ]

        records = build_report(groups, outcomes)

        assert [(r.type, r.status, r.detail, r.path) for r in records] == [
            ("Duplicate", "Group 1", "abc123", "/x/1.mkv"),
            ("Duplicate", "Group 1", "abc123", "/y/1.mkv"),
            ("Corrupted", "Moved", "/q/a.mkv", "/a.mkv"),
            ("Corrupted", "Failed", "file is locked", "/b.mkv"),
        ]

    def test_csv_round_trip_fields(self, tmp_path):
        """The CSV sink keeps the Type,Status,Detail,Path field set."""
        records = build_report([], [RemediationOutcome("/a, b.mkv", RemediationAction.SKIPPED, "Declined by user")])
        out = write_report_csv(records, str(tmp_path / "out" / "report.csv"))

        with open(out, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))

        assert rows == [{"Type": "Corrupted", "Status": "Skipped",
                         "Detail": "Declined by user", "Path": "/a, b.mkv"}]
