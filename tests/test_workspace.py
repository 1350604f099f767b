import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import workspace
from workspace import JobState


class TestJobState(unittest.TestCase):
    def test_missing_root_is_fresh(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            state = workspace.detect_job_state(Path(temp_dir) / "missing")
        self.assertIs(state, JobState.FRESH)

    def test_empty_out_is_fresh(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "out").mkdir()
            (root / "in").mkdir()
            (root / "in" / "00000000.png").touch()
            self.assertIs(workspace.detect_job_state(root), JobState.FRESH)

    def test_frames_in_out_are_resumable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "out").mkdir()
            (root / "out" / "00000000.png").touch()
            self.assertIs(workspace.detect_job_state(root), JobState.RESUMABLE)

    def test_frames_parked_by_interrupted_rename_are_resumable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            parked = root / "out" / ".normalize"
            parked.mkdir(parents=True)
            (parked / "3.png").touch()
            self.assertIs(workspace.detect_job_state(root), JobState.RESUMABLE)

    def test_manifest_for_other_input_is_not_resumable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "out").mkdir()
            (root / "out" / "00000000.png").touch()
            (root / workspace.MANIFEST_FILENAME).write_text(
                json.dumps({"input": {"path": "/videos/a.mp4", "size": 1, "mtime_ns": 1}})
            )
            current = {"path": "/videos/a.mp4", "size": 2, "mtime_ns": 5}

            with mock.patch("workspace.log_warn"):
                state = workspace.detect_job_state(root, current)

        self.assertIs(state, JobState.FRESH)

    def test_matching_manifest_is_resumable(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            identity = {"path": "/videos/a.mp4", "size": 1, "mtime_ns": 1}
            (root / "out").mkdir()
            (root / "out" / "00000000.png").touch()
            workspace.write_workspace_manifest(root / workspace.MANIFEST_FILENAME, identity)

            self.assertIs(workspace.detect_job_state(root, identity), JobState.RESUMABLE)


class TestDecideResume(unittest.TestCase):
    def test_fresh_never_resumes(self):
        for policy in ("yes", "no", "ask"):
            self.assertFalse(
                workspace.decide_resume(JobState.FRESH, policy, prompt=lambda _q: True)
            )

    def test_explicit_policies(self):
        self.assertTrue(workspace.decide_resume(JobState.RESUMABLE, "yes"))
        self.assertFalse(workspace.decide_resume(JobState.RESUMABLE, "no"))

    def test_ask_uses_prompt(self):
        questions = []

        def prompt(question):
            questions.append(question)
            return True

        self.assertTrue(workspace.decide_resume(JobState.RESUMABLE, "ask", prompt=prompt))
        self.assertEqual(questions, [workspace.RESUME_PROMPT])

    def test_ask_without_terminal_restarts(self):
        with mock.patch("workspace.sys.stdin") as stdin_mock:
            stdin_mock.isatty.return_value = False
            self.assertFalse(workspace.decide_resume(JobState.RESUMABLE, "ask"))

    def test_unknown_policy_raises(self):
        with self.assertRaises(ValueError):
            workspace.decide_resume(JobState.RESUMABLE, "maybe")


class TestPrepareWorkspace(unittest.TestCase):
    def test_fresh_prepare_wipes_existing_tree(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            (root / "out").mkdir(parents=True)
            (root / "out" / "00000000.png").touch()
            (root / "stale.txt").touch()

            ws = workspace.prepare_workspace(root, resume=False)

            self.assertTrue(ws.in_dir.is_dir())
            self.assertTrue(ws.out_dir.is_dir())
            self.assertEqual(list(ws.out_dir.iterdir()), [])
            self.assertFalse((root / "stale.txt").exists())

    def test_resume_keeps_existing_frames(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            (root / "out").mkdir(parents=True)
            (root / "out" / "00000000.png").touch()

            ws = workspace.prepare_workspace(root, resume=True)

            self.assertTrue((ws.out_dir / "00000000.png").exists())
            self.assertTrue(ws.in_dir.is_dir())

    def test_fresh_prepare_writes_manifest(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            identity = {"path": "x", "size": 3, "mtime_ns": 4}

            ws = workspace.prepare_workspace(root, resume=False, identity=identity)

            payload = workspace.read_workspace_manifest(ws.manifest_path)
        self.assertEqual(payload["input"], identity)

    def test_layout_names(self):
        ws = workspace.Workspace(Path("/tmp/magscale_clip"))
        self.assertEqual(ws.in_dir, Path("/tmp/magscale_clip/in"))
        self.assertEqual(ws.out_dir, Path("/tmp/magscale_clip/out"))
        self.assertEqual(ws.audio_path.parent, ws.root)
        self.assertTrue(ws.audio_path.name.startswith("audio."))


class TestWorkspaceSession(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch.multiple("workspace", log_info=mock.DEFAULT, log_warn=mock.DEFAULT)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_removed_after_success(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with workspace.workspace_session(root, resume=False) as ws:
                (ws.out_dir / "00000000.png").touch()
            self.assertFalse(root.exists())

    def test_removed_after_failure(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with self.assertRaises(RuntimeError):
                with workspace.workspace_session(root, resume=False):
                    raise RuntimeError("boom")
            self.assertFalse(root.exists())

    def test_removed_after_interrupt(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with mock.patch("workspace.close_progress_bars") as close_mock:
                with self.assertRaises(KeyboardInterrupt):
                    with workspace.workspace_session(root, resume=False):
                        raise KeyboardInterrupt
            self.assertFalse(root.exists())
        close_mock.assert_called_once()

    def test_kept_on_failure_when_requested(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with self.assertRaises(RuntimeError):
                with workspace.workspace_session(root, resume=False, keep_policy="on-failure"):
                    raise RuntimeError("boom")
            self.assertTrue(root.exists())

    def test_on_failure_policy_still_cleans_success(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with workspace.workspace_session(root, resume=False, keep_policy="on-failure"):
                pass
            self.assertFalse(root.exists())

    def test_always_policy_keeps_tree(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir) / "job"
            with workspace.workspace_session(root, resume=False, keep_policy="always"):
                pass
            self.assertTrue(root.exists())


if __name__ == "__main__":
    unittest.main()
